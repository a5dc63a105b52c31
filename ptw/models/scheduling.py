"""
PTW Engine
Scheduling models.

Models:
    - TimerJob: keyed one-shot timer (permit expiry, expiry reminder)
    - ScheduledJob: persisted registry of periodic jobs (run history + config)
"""

from datetime import datetime, timezone

from ptw.models import db
from ptw.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

TIMER_STATUSES = {"pending", "fired", "cancelled", "failed"}
JOB_STATUSES = {"active", "paused", "completed", "failed"}


class TimerJob(db.Model):
    """
    One-shot timer addressed by a unique key, e.g. ``permit:42:expire``.

    Delivery is at-least-once: a timer only leaves ``pending`` after its
    handler returned. Re-scheduling an existing key re-arms the same row.
    """

    __tablename__ = "timer_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_key = db.Column(db.String(120), unique=True, nullable=False,
                        comment="Caller-chosen key; cancel/reschedule address timers by it")
    job_kind = db.Column(db.String(40), nullable=False, comment="expire | expiry-reminder | ...")
    fire_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    payload = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True,
                       comment="pending, fired, cancelled, failed")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    fired_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "job_key": self.job_key,
            "job_kind": self.job_kind,
            "fire_at": isoformat(self.fire_at),
            "payload": self.payload or {},
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "fired_at": isoformat(self.fired_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<TimerJob {self.job_key} [{self.status}]>"


class ScheduledJob(db.Model):
    """
    Registry of periodic background jobs.

    Tracks job configuration, last run time, and run history.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Unique job identifier: timer_poller, timer_reconciliation")
    description = db.Column(db.String(500), default="")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="Interval config, e.g. {'minutes': 1}")
    status = db.Column(db.String(20), default="active",
                       comment="active, paused, completed, failed")
    is_enabled = db.Column(db.Boolean, default=True)

    # Execution tracking
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True,
                                comment="Summary of last execution")
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record a job execution."""
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_config": self.schedule_config,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": isoformat(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
