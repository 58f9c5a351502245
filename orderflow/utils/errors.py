"""Standardised API error responses.

Usage
-----
    from orderflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Order not found")
    return api_error(E.VALIDATION_REQUIRED, "customer_id is required")

Blueprints call ``register_error_handlers(bp)`` once so that service-layer
exceptions from ``orderflow.core.exceptions`` turn into the same JSON body
everywhere.
"""

from __future__ import annotations

import logging

from flask import jsonify

from orderflow.core.exceptions import (
    ConflictError,
    InvalidPersonalizationInput,
    NotFoundError,
    StateError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business-rule validation – HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"
    INVALID_PERSONALIZATION = "ERR_INVALID_PERSONALIZATION"

    # Identity – HTTP 401
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.INVALID_PERSONALIZATION: 422,
    E.UNAUTHENTICATED: 401,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants or a
        ``StateError.code``).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (violations, pending proof id, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Attach the domain-exception → JSON handlers to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(exc: NotFoundError):
        logger.info("Not found: %s", exc)
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @bp.errorhandler(InvalidPersonalizationInput)
    def _handle_invalid_personalization(exc: InvalidPersonalizationInput):
        return api_error(E.INVALID_PERSONALIZATION, str(exc), details=exc.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(exc: ValidationError):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)

    @bp.errorhandler(StateError)
    def _handle_state(exc: StateError):
        return api_error(exc.code, str(exc), status=409, details=exc.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(exc: ConflictError):
        code = E.CONFLICT_CONCURRENT if exc.retryable else E.CONFLICT_DUPLICATE
        return api_error(code, str(exc), details={"retryable": exc.retryable})
