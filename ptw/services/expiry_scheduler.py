"""
PTW Engine
Expiry / reminder scheduler client.

Keeps a permit's two timers in line with its ``expires_at``:

    permit:<id>:expiry-reminder   fires reminder_lead_hours before expiry, or at
                                  once when that moment has already passed
    permit:<id>:expire            fires at expiry, drives the ``expire`` transition

Rescheduling always cancels first, then submits, so an extension never
leaves two reminders behind. Every call is best-effort: failures are
retried and logged through ``run_side_effect`` and never reach the
transition that triggered them.
"""

import logging
from datetime import datetime, timedelta

from ptw.services.helpers.side_effects import run_side_effect
from ptw.services.scheduler_service import SchedulerService
from ptw.utils.helpers import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)

KIND_EXPIRE = "expire"
KIND_EXPIRY_REMINDER = "expiry-reminder"
PERMIT_TIMER_KINDS = (KIND_EXPIRY_REMINDER, KIND_EXPIRE)


def timer_key(permit_id: int, kind: str) -> str:
    return f"permit:{permit_id}:{kind}"


def _cancel_all(permit_id: int) -> None:
    for kind in PERMIT_TIMER_KINDS:
        SchedulerService.cancel(timer_key(permit_id, kind))


def _arm(permit_id: int, expires_at: datetime, reminder_lead_hours: float, now: datetime) -> None:
    _cancel_all(permit_id)
    payload = {"permit_id": permit_id, "expires_at": isoformat(expires_at)}

    remind_at = max(expires_at - timedelta(hours=reminder_lead_hours), now)
    SchedulerService.schedule(
        timer_key(permit_id, KIND_EXPIRY_REMINDER), remind_at, payload, kind=KIND_EXPIRY_REMINDER,
    )

    SchedulerService.schedule(timer_key(permit_id, KIND_EXPIRE), expires_at, payload, kind=KIND_EXPIRE)


def schedule_expiry_jobs(permit_id: int, expires_at: datetime | None, *,
                         reminder_lead_hours: float = 24, now: datetime | None = None) -> bool:
    """(Re)arm the reminder and expire timers for a permit. Never raises."""
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return False
    ok = run_side_effect(
        "schedule_expiry_jobs", _arm, permit_id, expires_at, reminder_lead_hours, as_utc(now) or utcnow(),
        permit_id=permit_id,
    )
    if ok:
        logger.info(
            "Expiry timers armed for permit %s (expires %s)", permit_id, isoformat(expires_at),
            extra={"permit_id": permit_id, "event_type": "timers_scheduled"},
        )
    return ok


def cancel_permit_jobs(permit_id: int) -> bool:
    """Cancel both timers of a permit. Never raises."""
    return run_side_effect("cancel_permit_jobs", _cancel_all, permit_id, permit_id=permit_id)
