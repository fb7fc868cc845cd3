"""
Request timing middleware.

Every API response carries X-Request-ID and X-Request-Duration-Ms.
Log level per request:
    - slower than SLOW_REQUEST_MS        → WARNING
    - 5xx                                → ERROR
    - accepted workflow writes (2xx)     → INFO, tagged with the CRA id
    - everything else                    → DEBUG
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Probes are polled constantly; never logged
_SKIP_LOG = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000

_WRITE_METHODS = frozenset({"POST", "PUT", "DELETE"})


def _request_context(response, duration_ms: float) -> dict:
    actor = getattr(g, "actor", None)
    view_args = request.view_args or {}
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": getattr(g, "request_id", ""),
        "cra_id": view_args.get("request_id"),
        "actor_role": actor.role.value if actor else None,
    }


def _log_level(response, duration_ms: float, threshold: float) -> tuple[int, str]:
    if duration_ms > threshold:
        return logging.WARNING, "Slow request"
    if response.status_code >= 500:
        return logging.ERROR, "Server error"
    if request.method in _WRITE_METHODS and response.status_code < 300:
        return logging.INFO, "Write"
    return logging.DEBUG, "Request"


def init_request_timing(app: Flask):
    """Register before/after hooks for request ids and timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")

        if request.path in _SKIP_LOG or request.path.startswith("/static"):
            return response

        threshold = app.config.get("SLOW_REQUEST_MS", SLOW_THRESHOLD_MS)
        level, label = _log_level(response, duration_ms, threshold)
        logger.log(
            level, "%s: %s %s %d (%.0fms)",
            label, request.method, request.path, response.status_code, duration_ms,
            extra=_request_context(response, duration_ms),
        )
        return response
