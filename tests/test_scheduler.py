"""
Scheduler service tests.

Covers:
    1. Timer schedule / cancel / re-arm by key
    2. run_due: at-least-once delivery, retries, give-up
    3. Expiry scheduler client (reminder + expire timers)
    4. Scheduled jobs: poller and reconciliation
    5. Best-effort side effects never undo a committed transition
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from ptw.models import db
from ptw.models.notification import Notification
from ptw.models.scheduling import ScheduledJob, TimerJob
from ptw.services import permit_service
from ptw.services.expiry_scheduler import (
    KIND_EXPIRE,
    KIND_EXPIRY_REMINDER,
    cancel_permit_jobs,
    schedule_expiry_jobs,
    timer_key,
)
from ptw.services.scheduler_service import (
    SchedulerService,
    UnknownTimerKind,
    get_registered_jobs,
    get_timer_handlers,
    register_timer_handler,
)
from ptw.utils.helpers import as_utc

_calls = []


@register_timer_handler("test-echo")
def _echo_handler(key, payload, fired_at):
    _calls.append((key, payload.get("n")))


@register_timer_handler("test-boom")
def _boom_handler(key, payload, fired_at):
    raise RuntimeError("handler exploded")


@register_timer_handler("test-rearm")
def _rearm_handler(key, payload, fired_at):
    SchedulerService.schedule(key, fired_at + timedelta(hours=1), payload, kind="test-rearm")


@pytest.fixture(autouse=True)
def _reset_calls():
    _calls.clear()
    yield
    _calls.clear()


# ═══════════════════════════════════════════════════════════════════════════
#  TIMERS
# ═══════════════════════════════════════════════════════════════════════════


class TestTimers:
    def test_handlers_registered(self):
        assert {KIND_EXPIRE, KIND_EXPIRY_REMINDER} <= set(get_timer_handlers())
        assert {"timer_poller", "timer_reconciliation"} <= set(get_registered_jobs())

    def test_schedule_and_fire(self, flow):
        SchedulerService.schedule("k1", flow.now, {"n": 1}, kind="test-echo")
        summary = SchedulerService.run_due(now=flow.now + timedelta(seconds=1))

        assert summary == {"due": 1, "fired": 1, "retrying": 0, "failed": 0}
        assert _calls == [("k1", 1)]
        timer = SchedulerService.get_timer("k1")
        assert timer.status == "fired"
        assert timer.attempts == 1

    def test_not_yet_due(self, flow):
        SchedulerService.schedule("k1", flow.now + timedelta(hours=1), kind="test-echo")
        assert SchedulerService.run_due(now=flow.now)["due"] == 0
        assert _calls == []

    def test_cancel(self, flow):
        SchedulerService.schedule("k1", flow.now, kind="test-echo")
        assert SchedulerService.cancel("k1") is True
        assert SchedulerService.cancel("k1") is False
        assert SchedulerService.cancel("never-scheduled") is False
        assert SchedulerService.run_due(now=flow.now + timedelta(hours=1))["due"] == 0

    def test_reschedule_same_key_rearms(self, flow):
        SchedulerService.schedule("k1", flow.now, {"n": 1}, kind="test-echo")
        SchedulerService.cancel("k1")
        SchedulerService.schedule("k1", flow.now + timedelta(minutes=5), {"n": 2}, kind="test-echo")

        assert TimerJob.query.filter_by(job_key="k1").count() == 1
        SchedulerService.run_due(now=flow.now + timedelta(minutes=10))
        assert _calls == [("k1", 2)]

    def test_unknown_kind(self, flow):
        with pytest.raises(UnknownTimerKind):
            SchedulerService.schedule("k1", flow.now, kind="no-such-kind")

    def test_failing_handler_retried_then_failed(self, app, flow):
        SchedulerService.schedule("k1", flow.now, kind="test-boom")
        max_attempts = app.config["TIMER_MAX_ATTEMPTS"]

        for attempt in range(1, max_attempts):
            summary = SchedulerService.run_due(now=flow.now)
            assert summary["retrying"] == 1
            timer = SchedulerService.get_timer("k1")
            assert timer.status == "pending"
            assert timer.attempts == attempt
            assert "handler exploded" in timer.last_error

        summary = SchedulerService.run_due(now=flow.now)
        assert summary["failed"] == 1
        assert SchedulerService.get_timer("k1").status == "failed"
        assert SchedulerService.run_due(now=flow.now)["due"] == 0

    def test_handler_rearm_left_alone(self, flow):
        SchedulerService.schedule("k1", flow.now, kind="test-rearm")
        SchedulerService.run_due(now=flow.now)

        timer = SchedulerService.get_timer("k1")
        assert timer.status == "pending"
        assert as_utc(timer.fire_at) == flow.now + timedelta(hours=1)

    def test_batch_limit(self, flow):
        for i in range(3):
            SchedulerService.schedule(f"k{i}", flow.now + timedelta(seconds=i), {"n": i}, kind="test-echo")
        assert SchedulerService.run_due(now=flow.now + timedelta(minutes=1), limit=2)["fired"] == 2
        assert _calls == [("k0", 0), ("k1", 1)]


# ═══════════════════════════════════════════════════════════════════════════
#  EXPIRY SCHEDULER CLIENT
# ═══════════════════════════════════════════════════════════════════════════


class TestExpiryScheduler:
    def test_reminder_and_expire(self, flow):
        expires = flow.now + timedelta(hours=30)
        assert schedule_expiry_jobs(7, expires, reminder_lead_hours=24, now=flow.now) is True

        reminder = SchedulerService.get_timer(timer_key(7, KIND_EXPIRY_REMINDER))
        expire = SchedulerService.get_timer(timer_key(7, KIND_EXPIRE))
        assert as_utc(reminder.fire_at) == flow.now + timedelta(hours=6)
        assert as_utc(expire.fire_at) == expires
        assert expire.payload == {"permit_id": 7, "expires_at": expires.isoformat()}

    def test_reminder_due_now_when_lead_passed(self, flow):
        schedule_expiry_jobs(7, flow.now + timedelta(hours=2), reminder_lead_hours=24, now=flow.now)
        reminder = SchedulerService.get_timer(timer_key(7, KIND_EXPIRY_REMINDER))
        assert reminder.status == "pending"
        assert as_utc(reminder.fire_at) == flow.now
        assert SchedulerService.get_timer(timer_key(7, KIND_EXPIRE)).status == "pending"

    def test_reschedule_replaces_reminder(self, flow):
        schedule_expiry_jobs(7, flow.now + timedelta(hours=30), reminder_lead_hours=24, now=flow.now)
        expires = flow.now + timedelta(hours=10)
        schedule_expiry_jobs(7, expires, reminder_lead_hours=24, now=flow.now)

        reminders = TimerJob.query.filter_by(job_key=timer_key(7, KIND_EXPIRY_REMINDER)).all()
        assert [r.status for r in reminders] == ["pending"]
        assert as_utc(reminders[0].fire_at) == flow.now
        assert reminders[0].payload["expires_at"] == expires.isoformat()

    def test_activation_with_default_expiry_arms_reminder(self, flow):
        permit = flow.active()
        reminder = SchedulerService.get_timer(timer_key(permit.id, KIND_EXPIRY_REMINDER))
        assert reminder.status == "pending"
        assert as_utc(reminder.fire_at) == flow.now
        assert reminder.payload["expires_at"] == as_utc(permit.expires_at).isoformat()

    def test_short_extension_rearms_reminder(self, flow, org):
        permit = flow.active()
        later = flow.now + timedelta(hours=2)
        permit = permit_service.extend(permit.id, org.ident("hod"), 4, now=later)

        reminder = SchedulerService.get_timer(timer_key(permit.id, KIND_EXPIRY_REMINDER))
        assert reminder.status == "pending"
        assert as_utc(reminder.fire_at) == later
        assert reminder.payload["expires_at"] == as_utc(permit.expires_at).isoformat()

    def test_cancel_permit_jobs(self, flow):
        schedule_expiry_jobs(7, flow.now + timedelta(hours=30), reminder_lead_hours=24, now=flow.now)
        assert cancel_permit_jobs(7) is True
        statuses = {t.status for t in TimerJob.query.all()}
        assert statuses == {"cancelled"}

    def test_no_expiry_no_timers(self, flow):
        assert schedule_expiry_jobs(7, None, now=flow.now) is False
        assert TimerJob.query.count() == 0


class TestReminderHandler:
    def test_reminder_notifies_requester(self, flow, org):
        permit = flow.active(schedule={"end_date": (flow.now + timedelta(hours=30)).isoformat()})
        SchedulerService.run_due(now=flow.now + timedelta(hours=7))
        notes = Notification.query.filter_by(event_kind="permit_expiring").all()
        assert [n.recipient_id for n in notes] == [org.users["worker"].id]
        assert notes[0].entity_id == permit.id

    def test_reminder_fires_at_once_for_short_permit(self, flow, org):
        permit = flow.active()
        summary = SchedulerService.run_due(now=flow.now + timedelta(minutes=1))
        assert summary["fired"] == 1

        notes = Notification.query.filter_by(event_kind="permit_expiring").all()
        assert [n.recipient_id for n in notes] == [org.users["worker"].id]
        assert permit_service.get_permit(permit.id, org.ident("admin")).status == "active"
        assert SchedulerService.get_timer(timer_key(permit.id, KIND_EXPIRE)).status == "pending"

    def test_stale_reminder_ignored(self, flow, org):
        permit = flow.active(schedule={"end_date": (flow.now + timedelta(hours=30)).isoformat()})
        reminder_key = timer_key(permit.id, KIND_EXPIRY_REMINDER)
        payload = dict(SchedulerService.get_timer(reminder_key).payload)

        permit_service.extend(permit.id, org.ident("hod"), 10, now=flow.now)
        SchedulerService.on_fire(reminder_key, payload, KIND_EXPIRY_REMINDER, fired_at=flow.now)
        assert Notification.query.filter_by(event_kind="permit_expiring").count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  PERIODIC JOBS
# ═══════════════════════════════════════════════════════════════════════════


class TestJobs:
    def test_ensure_jobs_registered(self):
        created = SchedulerService.ensure_jobs_registered()
        assert {j.job_name for j in created} >= {"timer_poller", "timer_reconciliation"}
        assert SchedulerService.ensure_jobs_registered() == []

    def test_run_job_records_history(self):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("timer_poller")
        assert result["status"] == "success"
        job = ScheduledJob.query.filter_by(job_name="timer_poller").first()
        assert job.run_count == 1
        assert job.last_run_status == "success"

    def test_disabled_job_skipped(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("timer_poller", False)
        assert SchedulerService.run_job("timer_poller")["status"] == "skipped"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nope")["status"] == "error"

    def test_reconciliation_rearms_lost_timer(self, flow, org):
        with patch.object(SchedulerService, "schedule", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
            permit = flow.active()
        assert permit.status == "active"
        assert SchedulerService.get_timer(timer_key(permit.id, KIND_EXPIRE)) is None

        result = SchedulerService.run_job("timer_reconciliation")
        assert result["result"] == {"checked": 1, "rearmed": 1}
        timer = SchedulerService.get_timer(timer_key(permit.id, KIND_EXPIRE))
        assert timer.status == "pending"
        assert as_utc(timer.fire_at) == as_utc(permit.expires_at)

        assert SchedulerService.run_job("timer_reconciliation")["result"] == {"checked": 1, "rearmed": 0}


# ═══════════════════════════════════════════════════════════════════════════
#  SIDE EFFECTS
# ═══════════════════════════════════════════════════════════════════════════


class TestSideEffects:
    def test_notification_failure_does_not_undo_transition(self, flow, org):
        permit = flow.create()
        with patch(
            "ptw.services.permit_service.NotificationService.notify",
            side_effect=RuntimeError("mail relay down"),
        ) as notify:
            permit = permit_service.submit(permit.id, org.ident("worker"))

        assert permit.status == "submitted"
        assert notify.call_count == 3  # first attempt + SIDE_EFFECT_RETRY_MAX retries
        db.session.expire_all()
        assert permit_service.get_permit(permit.id, org.ident("admin")).status == "submitted"
        assert Notification.query.count() == 0

    def test_unexpected_sink_error_does_not_undo_transition(self, flow, org):
        permit = flow.create()
        with patch(
            "ptw.services.permit_service.NotificationService.notify",
            side_effect=ConnectionError("sink down"),
        ) as notify:
            permit = permit_service.submit(permit.id, org.ident("worker"))

        assert permit.status == "submitted"
        assert notify.call_count == 3
        db.session.expire_all()
        assert permit_service.get_permit(permit.id, org.ident("admin")).status == "submitted"
