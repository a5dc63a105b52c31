"""
Request timing & access log.

Every API response carries X-Request-ID and X-Request-Duration-Ms.
State-changing permit calls are logged at INFO (who did what to which
permit, with the outcome); other requests at DEBUG, slow ones
(``SLOW_REQUEST_MS``) at WARNING and 5xx at ERROR.
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health"})
_MUTATING = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _access_fields(response, duration_ms):
    identity = getattr(g, "identity", None)
    view_args = request.view_args or {}
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": g.request_id,
        "user_id": identity.user_id if identity else None,
        "company_id": view_args.get("company_id") or (identity.company_id if identity else None),
        "permit_id": view_args.get("permit_id"),
    }


def init_request_timing(app: Flask):
    """Register the before/after request hooks."""

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
        response.headers["X-Request-ID"] = g.request_id
        if request.path in _QUIET_PATHS:
            return response

        extra = _access_fields(response, duration_ms)
        slow_ms = current_app.config.get("SLOW_REQUEST_MS", 1000)
        line = "%s %s -> %d (%.0fms)"
        args = (request.method, request.path, response.status_code, duration_ms)

        if response.status_code >= 500:
            logger.error("Server error: " + line, *args, extra=extra)
        elif duration_ms > slow_ms:
            logger.warning("Slow request: " + line, *args, extra=extra)
        elif extra["permit_id"] is not None and request.method in _MUTATING:
            extra["event_type"] = f"permit_{request.endpoint.rsplit('.', 1)[-1]}" if request.endpoint else None
            logger.info("Permit action: " + line, *args, extra=extra)
        else:
            logger.debug("Request: " + line, *args, extra=extra)
        return response
