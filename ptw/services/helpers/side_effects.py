"""
Best-effort execution of post-commit side effects.

Notifications and timer scheduling run after a transition has committed.
A failure there must never surface as a transition failure: the call is
retried with backoff, then logged and dropped. The periodic timer
reconciliation job re-arms expiry timers that were lost this way.

Retry policy (config):
    SIDE_EFFECT_RETRY_MAX      extra attempts after the first failure (default 2)
    SIDE_EFFECT_RETRY_BACKOFF  seconds to sleep before each retry (default [1, 4])
"""

import logging
import time

from flask import current_app

from ptw.models import db

logger = logging.getLogger(__name__)

_DEFAULT_RETRY_MAX = 2
_DEFAULT_BACKOFF_SECONDS = [1, 4]


def _retry_settings():
    retry_max = int(current_app.config.get("SIDE_EFFECT_RETRY_MAX", _DEFAULT_RETRY_MAX))
    backoff = current_app.config.get("SIDE_EFFECT_RETRY_BACKOFF", _DEFAULT_BACKOFF_SECONDS)
    if isinstance(backoff, str):
        backoff = [float(s) for s in backoff.split(",") if s.strip()]
    return max(retry_max, 0), list(backoff) or [0]


def run_side_effect(label: str, fn, *args, permit_id=None, **kwargs) -> bool:
    """Call ``fn(*args, **kwargs)`` with retries. Never raises.

    Returns:
        True when an attempt succeeded, False when every attempt failed.
    """
    retry_max, backoff = _retry_settings()
    last_error = None

    for attempt in range(retry_max + 1):
        try:
            fn(*args, **kwargs)
            return True
        except Exception as exc:
            db.session.rollback()
            last_error = str(exc)[:500]
            logger.warning(
                "Side effect %s failed attempt=%d/%d permit=%s error=%s",
                label, attempt + 1, retry_max + 1, permit_id, last_error,
                extra={"permit_id": permit_id, "event_type": "side_effect_retry"},
            )

        if attempt < retry_max:
            sleep_s = backoff[min(attempt, len(backoff) - 1)]
            if sleep_s:
                time.sleep(sleep_s)

    logger.error(
        "Side effect %s gave up after %d attempts permit=%s error=%s",
        label, retry_max + 1, permit_id, last_error,
        extra={"permit_id": permit_id, "event_type": "side_effect_failed"},
    )
    return False
