"""
PTW Engine
Scheduled Jobs.

Timer handlers (one-shot, keyed per permit):
    - expire:           drives the ``expire`` transition
    - expiry-reminder:  notifies the requester ahead of expiry

Periodic jobs:
    - timer_poller:          fires due timers
    - timer_reconciliation:  re-arms expire timers lost to scheduling failures

All handlers re-read the permit and no-op when it is no longer eligible, so
repeated or stale deliveries are harmless.
"""

from __future__ import annotations

import logging
from typing import Any

from ptw.models import db
from ptw.models.permit import Permit
from ptw.models.scheduling import TimerJob
from ptw.services import permit_service
from ptw.services.expiry_scheduler import (
    KIND_EXPIRE,
    KIND_EXPIRY_REMINDER,
    schedule_expiry_jobs,
    timer_key,
)
from ptw.services.notification import NotificationService
from ptw.services.policy_store import get_policy
from ptw.services.scheduler_service import SchedulerService, register_job, register_timer_handler
from ptw.utils.helpers import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Timer handlers
# ═══════════════════════════════════════════════════════════════════════════

@register_timer_handler(KIND_EXPIRE)
def handle_expire(key: str, payload: dict, fired_at) -> None:
    permit_service.expire(payload["permit_id"], fired_at=fired_at)


@register_timer_handler(KIND_EXPIRY_REMINDER)
def handle_expiry_reminder(key: str, payload: dict, fired_at) -> None:
    """Remind the requester, unless the permit moved on since scheduling."""
    permit = db.session.get(Permit, payload["permit_id"])
    if permit is None or permit.status != "active":
        return
    if isoformat(permit.expires_at) != payload.get("expires_at"):
        logger.debug("Stale reminder %s ignored (expires_at moved)", key)
        return

    NotificationService.notify(
        permit.requested_by,
        "permit_expiring",
        {
            "permit_id": permit.id,
            "permit_number": permit.permit_number,
            "status": permit.status,
            "expires_at": isoformat(permit.expires_at),
        },
        company_id=permit.company_id,
        entity_id=permit.id,
    )
    logger.info("Expiry reminder sent for permit %s", permit.permit_number,
                extra={"permit_id": permit.id, "event_type": "permit_expiring"})


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Timer Poller
# ═══════════════════════════════════════════════════════════════════════════

@register_job("timer_poller")
def poll_timers(app) -> dict[str, Any]:
    """Fire every pending timer whose fire time has passed."""
    return SchedulerService.run_due()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Timer Reconciliation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("timer_reconciliation")
def reconcile_timers(app) -> dict[str, Any]:
    """Re-arm expire timers of active permits whose timer is missing or stale."""
    results = {"checked": 0, "rearmed": 0}
    now = utcnow()

    active = Permit.query.filter(Permit.status == "active", Permit.expires_at.isnot(None)).all()
    for permit in active:
        results["checked"] += 1
        timer = TimerJob.query.filter_by(job_key=timer_key(permit.id, KIND_EXPIRE)).first()
        in_sync = (
            timer is not None
            and timer.status == "pending"
            and as_utc(timer.fire_at) == as_utc(permit.expires_at)
        )
        if in_sync:
            continue
        lead = get_policy(permit.company_id).reminder_lead_hours
        if schedule_expiry_jobs(permit.id, permit.expires_at, reminder_lead_hours=lead, now=now):
            results["rearmed"] += 1

    logger.info("Timer reconciliation: %s", results)
    return results
