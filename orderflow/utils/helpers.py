"""Shared utility functions for services and blueprints.

commit_or_conflict:  service-side commit that turns lost races into ConcurrencyConflict
parse_date:          lenient date parsing for request payloads (ValueError on bad input)
parse_datetime:      ISO-8601 datetime parsing, naive values treated as UTC
parse_decimal:       money parsing (ValueError on bad input)
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.exceptions import ConcurrencyConflict
from orderflow.models import db

logger = logging.getLogger(__name__)


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_conflict(resource: str, resource_id: str | None = None) -> None:
    """Commit the current session; a lost race becomes ConcurrencyConflict.

    StaleDataError   → another writer bumped the row's lock_version first
    IntegrityError   → a uniqueness constraint caught a concurrent duplicate

    Both roll the session back and surface as a retryable 409, never as a
    half-written state.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale %s %s on commit: %s", resource, resource_id, exc)
        raise ConcurrencyConflict(resource, resource_id) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on %s %s commit: %s", resource, resource_id, exc.orig)
        raise ConcurrencyConflict(resource, resource_id) from exc


# ── Input parsing ────────────────────────────────────────────────────────────

def parse_date(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS (→ date), DD.MM.YYYY, date objects.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_datetime(value):
    """Parse an ISO-8601 datetime; naive values are assumed to be UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError("Invalid datetime format. Use ISO-8601.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_decimal(value, default=None):
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
