"""
Request timing middleware.

Records request duration and logs slow requests.
Adds X-Request-Duration-Ms and X-Request-ID headers to all responses.
"""

import logging
import time
import uuid

from flask import Flask, g, request

from roadmap_sync.middleware.logging_config import bind_log_context, unbind_log_context

logger = logging.getLogger(__name__)

# Endpoints excluded from timing logs (high frequency, low value)
_SKIP_LOG = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

# Slow request threshold (ms). Sync runs are long by nature, so they get their own.
SLOW_THRESHOLD_MS = 1000
SLOW_SYNC_THRESHOLD_MS = 60_000


def _workspace_id() -> str | None:
    view_args = request.view_args or {}
    return view_args.get("wid")


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])
        g.log_context_token = bind_log_context(request_id=g.request_id, workspace_id=_workspace_id())

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")

        if request.path in _SKIP_LOG:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
        }
        threshold = SLOW_SYNC_THRESHOLD_MS if request.path.endswith("/sync") else SLOW_THRESHOLD_MS
        if duration_ms > threshold:
            logger.warning("Slow request: %s %s %d (%.0fms)",
                           request.method, request.path,
                           response.status_code, duration_ms, extra=extra)
        elif response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)",
                         request.method, request.path,
                         response.status_code, duration_ms, extra=extra)
        else:
            logger.debug("Request: %s %s %d (%.0fms)",
                         request.method, request.path,
                         response.status_code, duration_ms, extra=extra)

        return response

    @app.teardown_request
    def _unbind_context(exc=None):
        token = g.pop("log_context_token", None)
        if token is not None:
            unbind_log_context(token)
