"""
Order-number allocation.

Order numbers look like ``PO26000001``: a 2-letter prefix, the 2-digit
year and a 6-digit sequence that restarts every year.  The counter is the
one contended resource in the pipeline, so the lifecycle service depends on
the ``SequenceGenerator`` interface and never touches a counter directly.

Two backends:
    DatabaseSequenceGenerator — counter row per year, read FOR UPDATE inside
                                the caller's transaction (production default)
    InMemorySequenceGenerator — threading.Lock per process (tests, single worker)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from orderflow.core.exceptions import ConcurrencyConflict
from orderflow.models import db
from orderflow.models.production import OrderNumberCounter

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 6
_MAX_CREATE_RETRIES = 3


def format_order_number(prefix: str, year: int, value: int) -> str:
    """``("PO", 2026, 1)`` → ``"PO26000001"``."""
    if value >= 10 ** SEQUENCE_WIDTH:
        raise OverflowError(f"Order sequence for {year} exhausted")
    return f"{prefix}{year % 100:02d}{value:0{SEQUENCE_WIDTH}d}"


class SequenceGenerator(ABC):
    """Hands out strictly increasing integers per scope."""

    @abstractmethod
    def next_value(self, scope: str) -> int:
        ...


class InMemorySequenceGenerator(SequenceGenerator):
    def __init__(self, start: dict[str, int] | None = None) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, int] = dict(start or {})

    def next_value(self, scope: str) -> int:
        with self._lock:
            value = self._values.get(scope, 0) + 1
            self._values[scope] = value
            return value


class DatabaseSequenceGenerator(SequenceGenerator):
    """Counter row per scope, locked with SELECT … FOR UPDATE.

    The increment is only flushed: it commits (or rolls back) together
    with the order insert that consumes it, so a failed order never burns
    a number.
    """

    def next_value(self, scope: str) -> int:
        for attempt in range(_MAX_CREATE_RETRIES):
            counter = db.session.execute(
                select(OrderNumberCounter)
                .where(OrderNumberCounter.scope == scope)
                .with_for_update()
            ).scalar_one_or_none()

            if counter is not None:
                counter.last_value += 1
                db.session.flush()
                return counter.last_value

            # First order of the scope: create the row; a concurrent creator wins the PK
            try:
                with db.session.begin_nested():
                    db.session.add(OrderNumberCounter(scope=scope, last_value=1))
                return 1
            except IntegrityError:
                logger.info(
                    "Order counter row for %s created concurrently, retrying (attempt %d)",
                    scope, attempt + 1,
                )
        raise ConcurrencyConflict("OrderNumberCounter", scope)


_memory_generator = InMemorySequenceGenerator()


def get_sequence_generator() -> SequenceGenerator:
    """Return the generator selected by ``SEQUENCE_BACKEND`` config."""
    backend = current_app.config.get("SEQUENCE_BACKEND", "database")
    if backend == "memory":
        return _memory_generator
    return DatabaseSequenceGenerator()
