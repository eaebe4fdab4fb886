"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in holdingmanager/__init__.py with no default limits; this module
applies limits per route category.

Usage:
    from holdingmanager.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
SCAN_LIMIT = "5/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Manual alert scan:   5/minute  (full table scans)
        - Workflow endpoints: 60/minute
        - Alerts, scheduler: 200/minute
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflows")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("alerts", "scheduler"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    scan_view = app.view_functions.get("alerts.scan_alerts")
    if scan_view:
        limiter.limit(SCAN_LIMIT)(scan_view)

    health_view = app.view_functions.get("health")
    if health_view:
        limiter.exempt(health_view)

    app.logger.info(
        "Rate limiter configured: workflows: %s, alerts/scheduler: %s, scan: %s",
        WRITE_LIMIT, READ_LIMIT, SCAN_LIMIT,
    )
