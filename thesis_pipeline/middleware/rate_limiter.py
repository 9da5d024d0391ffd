"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in thesis_pipeline/__init__.py with no
default limits; this module applies granular limits per route category.

Usage:
    from thesis_pipeline.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow writes:  60/minute  (POST)
        - Workflow reads:   200/minute (GET)
        - Audit trail:      200/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=%s)", app.config.get("TESTING"))
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WRITE_LIMIT, methods=["POST"])(bp)
        limiter.limit(READ_LIMIT, methods=["GET"])(bp)

    bp = app.blueprints.get("audit")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — write: %s, read: %s", WRITE_LIMIT, READ_LIMIT)
