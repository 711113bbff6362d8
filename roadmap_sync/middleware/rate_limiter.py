"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in roadmap_sync/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from roadmap_sync.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Hierarchy sync / teardown:  10/minute  (each call fans out to the Source System)
        - Other API routes:           120/minute
        - Health check:               exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("hierarchy")
    if bp:
        limiter.limit("10/minute")(bp)

    for bp_name in ("workspace", "mapping", "ranking"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("120/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: hierarchy 10/min, other API 120/min")
