"""
HTTP rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter. The Limiter instance is
created in matasa/__init__.py with no default limits; this module applies
the limits per route category.

USSD turns are limited per phone number by RateLimiterService instead,
because the gateway calls from a handful of IPs.

Usage:
    from matasa.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

ADMIN_RATE_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Incident submission: INCIDENT_API_RATE_LIMIT (POST only)
        - Admin endpoints:     120/minute
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    incident_limit = app.config.get("INCIDENT_API_RATE_LIMIT", "10 per 15 minutes")
    bp = app.blueprints.get("incidents")
    if bp:
        limiter.limit(incident_limit, methods=["POST"])(bp)

    bp = app.blueprints.get("admin")
    if bp:
        limiter.limit(ADMIN_RATE_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    # The USSD webhook has its own per-phone limiter
    bp = app.blueprints.get("ussd")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: incidents POST %s, admin %s",
                    incident_limit, ADMIN_RATE_LIMIT)
