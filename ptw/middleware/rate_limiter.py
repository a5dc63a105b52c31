"""
Rate limiting for the permit API (Flask-Limiter).

The Limiter is created in ``ptw/__init__.py`` without default limits; this
module applies per-blueprint limits keyed by caller:

    permit_bp        60/minute   (writes drive notifications and timers)
    policy_bp        30/minute
    notification_bp  200/minute  (inbox polling)

Callers are identified by ``X-User-Id`` (falling back to the remote
address), so several users behind one gateway do not share a bucket.
Limits are overridable through ``RATELIMIT_PERMITS`` /
``RATELIMIT_POLICIES`` / ``RATELIMIT_NOTIFICATIONS`` and switched off
entirely with ``RATELIMIT_ENABLED = False`` (the testing config).
"""

import logging

from flask import request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

_BLUEPRINT_LIMITS = (
    ("permit_bp", "RATELIMIT_PERMITS", "60/minute"),
    ("policy_bp", "RATELIMIT_POLICIES", "30/minute"),
    ("notification_bp", "RATELIMIT_NOTIFICATIONS", "200/minute"),
)


def caller_key():
    """Rate-limit bucket: the X-User-Id caller, else the client address."""
    user_id = request.headers.get("X-User-Id", "").strip()
    if user_id.isdigit():
        return f"user:{user_id}"
    return get_remote_address()


def init_rate_limits(app, limiter):
    """Attach the per-blueprint limits. Call after blueprints are registered."""
    if not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    applied = {}
    for bp_name, config_key, default in _BLUEPRINT_LIMITS:
        bp = app.blueprints.get(bp_name)
        if bp is None:
            continue
        limit = app.config.get(config_key) or default
        limiter.limit(limit, key_func=caller_key)(bp)
        applied[bp_name] = limit

    logger.info("Rate limits configured: %s", applied)
