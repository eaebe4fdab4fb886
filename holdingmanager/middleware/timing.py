"""
Request timing middleware.

Every response carries X-Request-ID (echoed from the caller or generated)
and X-Request-Duration-Ms. Workflow and alert calls are logged with the
acting user and, when the route names one, the workflow instance.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Polled by load balancers; not worth a log line.
QUIET_PATHS = frozenset({"/api/v1/health"})

SLOW_REQUEST_MS = 1000


def _level_for(status: int, duration_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > SLOW_REQUEST_MS or status == 409:
        return logging.WARNING
    return logging.DEBUG


def _log_fields(status: int, duration_ms: float) -> dict:
    fields = {
        "method": request.method,
        "path": request.path,
        "status": status,
        "duration_ms": round(duration_ms, 1),
        "request_id": g.request_id,
        "user_id": request.headers.get("X-User-Id"),
        "remote_addr": request.remote_addr,
    }
    instance_id = (request.view_args or {}).get("instance_id")
    if instance_id is not None:
        fields["instance_id"] = instance_id
    return fields


def init_request_timing(app: Flask):
    @app.before_request
    def _stamp_request():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_request(response):
        started = g.pop("request_started", None)
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path not in QUIET_PATHS:
            status = response.status_code
            logger.log(
                _level_for(status, duration_ms),
                "%s %s -> %d (%.0fms)", request.method, request.path, status, duration_ms,
                extra=_log_fields(status, duration_ms),
            )
        return response
