"""
Rate limiting configuration.

The Limiter instance is created in cra_tracker/__init__.py with no default
limits; this module applies limits per route after blueprints are
registered.

Usage:
    from cra_tracker.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Endpoints that change request status
STATUS_CHANGE_ENDPOINTS = (
    "request.transition_status",
    "request.batch_transition_status",
    "request.notify_request",
)

WRITE_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits (per remote IP):
        - Status changes: CRA_STATUS_RATE_LIMIT (default 60/minute)
        - Other request writes: 120/minute
        - Health check: exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    status_limit = app.config.get("CRA_STATUS_RATE_LIMIT") or "60/minute"
    for endpoint in STATUS_CHANGE_ENDPOINTS:
        view = app.view_functions.get(endpoint)
        if view is not None:
            app.view_functions[endpoint] = limiter.limit(status_limit)(view)

    for endpoint in ("request.create_request", "request.update_request", "request.delete_request"):
        view = app.view_functions.get(endpoint)
        if view is not None:
            app.view_functions[endpoint] = limiter.limit(WRITE_LIMIT)(view)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — status changes: %s, writes: %s",
                    status_limit, WRITE_LIMIT)
