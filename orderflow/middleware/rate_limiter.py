"""
Rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter.  The Limiter instance is
created in orderflow/__init__.py with no default limits; this module
decides which blueprints get which limit.

Usage:
    from orderflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

_WRITE_METHODS = ["POST", "PUT", "PATCH", "DELETE"]
READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Limits (per remote IP):
        - orders / personalization writes:  MUTATION_RATE_LIMIT (default 120/minute)
        - orders / personalization reads:   300/minute
        - health:                           exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("MUTATION_RATE_LIMIT", "120/minute")
    for bp_name in ("orders", "personalization"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, methods=_WRITE_METHODS)(bp)
            limiter.limit(READ_LIMIT, methods=["GET"])(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: write %s, read %s", write_limit, READ_LIMIT)
