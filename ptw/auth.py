"""
PTW Engine
Authentication & caller identity middleware.

Provides:
    - Optional API key check via X-API-Key header (service-to-service gate)
    - Caller identity from the X-User-Id header, loaded from the directory
      into ``g.identity``
    - CSRF protection for state-changing requests (non-GET/HEAD/OPTIONS)
    - ``require_identity`` / ``require_admin`` view decorators

Configuration (app config / env vars):
    API_AUTH_ENABLED  — "true" to require an API key on /api/v1/*
    API_KEYS          — comma-separated list of accepted keys
"""

import functools
import logging

from flask import current_app, g, request

from ptw.services.directory import DirectoryService
from ptw.utils.errors import E, api_error

logger = logging.getLogger(__name__)

_FALSY = ("false", "0", "no", "off")


def _parse_api_keys() -> set[str]:
    raw = current_app.config.get("API_KEYS", "") or ""
    return {k.strip() for k in raw.split(",") if k.strip()}


def _is_auth_enabled() -> bool:
    return str(current_app.config.get("API_AUTH_ENABLED", "false")).lower() not in _FALSY


def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. This acts as a lightweight CSRF mitigation
    because HTML forms cannot send application/json content type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(
                E.VALIDATION_INVALID,
                "Content-Type must be application/json for state-changing requests",
                status=415,
            )
    return None


def _load_identity():
    raw = request.headers.get("X-User-Id", "").strip()
    if not raw:
        return None
    try:
        user_id = int(raw)
    except ValueError:
        logger.warning("Malformed X-User-Id header: %r", raw[:20])
        return None
    return DirectoryService().load_identity(user_id)


# ── View decorators ──────────────────────────────────────────────────────────

def require_identity(f):
    """Decorator: the request must carry a known, active X-User-Id."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "identity", None) is None:
            return api_error(E.UNAUTHENTICATED, "Caller identity required. Provide X-User-Id header.")
        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    """Decorator: the caller must hold an administrative role."""
    @functools.wraps(f)
    @require_identity
    def decorated(*args, **kwargs):
        if not g.identity.is_admin:
            logger.warning("Access denied: role '%s' tried admin endpoint %s", g.identity.role, request.path)
            return api_error(E.FORBIDDEN, "Administrator role required")
        return f(*args, **kwargs)
    return decorated


# ── App-level before_request hook installer ──────────────────────────────────

def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    - Attaches before_request hooks for API routes
    - Skips the health check
    """
    @app.before_request
    def _before_request_auth():
        g.identity = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path == "/api/v1/health":
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        if _is_auth_enabled():
            api_keys = _parse_api_keys()
            if not api_keys:
                logger.error("API_KEYS is not configured but API_AUTH_ENABLED=true")
                return api_error(E.INTERNAL, "Server authentication not configured")
            api_key = request.headers.get("X-API-Key", "").strip()
            if not api_key:
                return api_error(E.UNAUTHENTICATED, "Authentication required. Provide X-API-Key header.")
            if api_key not in api_keys:
                logger.warning("Invalid API key attempt: %s...", api_key[:8])
                return api_error(E.UNAUTHENTICATED, "Invalid API key")

        g.identity = _load_identity()
        return None

    with app.app_context():
        logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
