"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in procure/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from procure.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# blueprint name -> limit
BLUEPRINT_LIMITS = {
    "access": "300/minute",     # decision calls are cheap and frequent
    "workflow": "60/minute",
    "roles": "60/minute",
    "audit": "200/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints (per remote IP).

    Limits:
        - Access checks:       300/minute
        - Workflow / roles:    60/minute
        - Audit reads:         200/minute
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — %s",
        ", ".join(f"{name}: {limit}" for name, limit in BLUEPRINT_LIMITS.items()),
    )
