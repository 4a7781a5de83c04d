"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in reqdesk/__init__.py with no default limits; this module
applies the limits per route category.

Usage:
    from reqdesk.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Public tracking:  TRACKING_RATE_LIMIT (unauthenticated lookups)
        - Request routes:   120/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    tracking_limit = app.config.get("TRACKING_RATE_LIMIT", "30 per minute")
    bp = app.blueprints.get("tracking_bp")
    if bp:
        limiter.limit(tracking_limit)(bp)

    for bp_name in ("request_bp", "vehicle_request_bp", "approval_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    logger.info("Rate limiter configured: tracking=%s, requests=%s", tracking_limit, WRITE_LIMIT)
