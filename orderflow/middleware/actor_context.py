"""
Actor Context Middleware: who is calling.

Authentication happens upstream (API gateway / identity provider).  The
gateway forwards the authenticated user id in the trusted ``X-Actor-Id``
header; this middleware copies it to ``g.actor_id``.

Mutating API requests without an actor are refused with 401.  Reads without
an actor fall through and the ownership guards answer 404.

Chain order:
  timing.py  →  actor_context.py  →  route handler
"""

import logging

from flask import g, request

from orderflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-Id"

ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
)

_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def current_actor() -> str | None:
    return getattr(g, "actor_id", None)


def init_actor_context(app):
    """Register the actor lookup as a before_request hook."""

    @app.before_request
    def _actor_context():
        actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()
        g.actor_id = actor_id or None

        if not request.path.startswith("/api/"):
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        if g.actor_id is None and request.method in _MUTATING_METHODS:
            logger.warning(
                "Rejected %s %s without %s", request.method, request.path, ACTOR_HEADER,
                extra={"method": request.method, "path": request.path,
                       "request_id": getattr(g, "request_id", None)},
            )
            return api_error(E.UNAUTHENTICATED, f"{ACTOR_HEADER} header is required")
        return None
