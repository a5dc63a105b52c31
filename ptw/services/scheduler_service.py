"""
PTW Engine
Scheduler Service.

Two registries live here:

    - periodic jobs (``register_job``): named housekeeping functions with a
      ``ScheduledJob`` record for run history, triggered by the CLI or the
      admin API
    - one-shot timers (``register_timer_handler``): keyed ``TimerJob`` rows
      fired by the poller (``run_due``) once ``fire_at`` has passed

Timer delivery is at-least-once. A timer stays ``pending`` until its handler
returns; a raising handler is retried on the next poll until
``TIMER_MAX_ATTEMPTS`` is reached, after which the row is marked ``failed``.
Handlers must therefore be idempotent.

Architecture:
    - schedule(key, fire_at, payload, kind=...)  upsert by key, re-arms
    - cancel(key)                                pending → cancelled
    - on_fire(key, payload, kind)                dispatch to the handler
    - run_due(now)                               poll + dispatch + bookkeeping
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from datetime import datetime
from typing import Callable

from flask import Flask, current_app, has_app_context

from ptw.models import db
from ptw.models.scheduling import ScheduledJob, TimerJob
from ptw.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Registries
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_timer_handlers: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a periodic job function.

    Usage:
        @register_job("timer_poller")
        def poll_timers(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def register_timer_handler(kind: str):
    """Decorator to register the handler for one timer kind.

    The handler is called as ``fn(key, payload, fired_at)``.
    """
    def decorator(fn: Callable) -> Callable:
        _timer_handlers[kind] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def get_timer_handlers() -> dict[str, Callable]:
    return dict(_timer_handlers)


class UnknownTimerKind(RuntimeError):
    """No handler is registered for a timer's kind."""


class SchedulerService:
    """
    DB-backed scheduler.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs and %d timer kinds",
                    len(_job_registry), len(_timer_handlers))

    @classmethod
    def _context(cls):
        if has_app_context() or cls._app is None:
            return nullcontext()
        return cls._app.app_context()

    # ── One-shot timers ───────────────────────────────────────────────────

    @classmethod
    def schedule(cls, key: str, fire_at: datetime, payload: dict | None = None, *, kind: str) -> TimerJob:
        """Create or re-arm the timer addressed by ``key``."""
        if kind not in _timer_handlers:
            raise UnknownTimerKind(f"No handler registered for timer kind {kind!r}")

        fire_at = as_utc(fire_at)
        with cls._context():
            timer = TimerJob.query.filter_by(job_key=key).first()
            if timer is None:
                timer = TimerJob(job_key=key, job_kind=kind)
                db.session.add(timer)
            timer.job_kind = kind
            timer.fire_at = fire_at
            timer.payload = dict(payload or {})
            timer.status = "pending"
            timer.attempts = 0
            timer.last_error = None
            timer.fired_at = None
            db.session.commit()
            logger.debug("Timer %s armed for %s", key, fire_at.isoformat())
            return timer

    @classmethod
    def cancel(cls, key: str) -> bool:
        """Cancel a pending timer. Returns False when nothing was pending."""
        with cls._context():
            timer = TimerJob.query.filter_by(job_key=key, status="pending").first()
            if timer is None:
                return False
            timer.status = "cancelled"
            db.session.commit()
            logger.debug("Timer %s cancelled", key)
            return True

    @classmethod
    def get_timer(cls, key: str) -> TimerJob | None:
        return TimerJob.query.filter_by(job_key=key).first()

    @classmethod
    def on_fire(cls, key: str, payload: dict, kind: str, fired_at: datetime | None = None):
        """Dispatch a fired timer to its registered handler."""
        handler = _timer_handlers.get(kind)
        if handler is None:
            raise UnknownTimerKind(f"No handler registered for timer kind {kind!r}")
        return handler(key, dict(payload or {}), fired_at or utcnow())

    @classmethod
    def run_due(cls, now: datetime | None = None, limit: int | None = None) -> dict:
        """Fire every pending timer whose ``fire_at`` has passed.

        Returns:
            Dict with fired / failed / retrying counts.
        """
        now = as_utc(now) or utcnow()
        results = {"due": 0, "fired": 0, "retrying": 0, "failed": 0}

        with cls._context():
            max_attempts = int(cls._config("TIMER_MAX_ATTEMPTS", 5))
            limit = limit or int(cls._config("TIMER_BATCH_SIZE", 100))
            due = (
                TimerJob.query
                .filter(TimerJob.status == "pending", TimerJob.fire_at <= now)
                .order_by(TimerJob.fire_at.asc(), TimerJob.id.asc())
                .limit(limit)
                .all()
            )
            results["due"] = len(due)
            # Snapshot first: handlers commit and may re-arm rows.
            snapshot = [(t.id, t.job_key, t.job_kind, dict(t.payload or {}), as_utc(t.fire_at)) for t in due]

            for timer_id, key, kind, payload, armed_for in snapshot:
                error = None
                try:
                    cls.on_fire(key, payload, kind, fired_at=now)
                except Exception as exc:
                    db.session.rollback()
                    error = str(exc)[:500]
                    logger.exception("Timer %s (%s) handler failed", key, kind)

                timer = db.session.get(TimerJob, timer_id)
                if timer is None:
                    continue
                if timer.status != "pending" or as_utc(timer.fire_at) != armed_for:
                    # Cancelled or re-armed by the handler itself.
                    results["fired" if error is None else "retrying"] += 1
                    db.session.commit()
                    continue

                timer.attempts = (timer.attempts or 0) + 1
                if error is None:
                    timer.status = "fired"
                    timer.fired_at = now
                    results["fired"] += 1
                else:
                    timer.last_error = error
                    if timer.attempts >= max_attempts:
                        timer.status = "failed"
                        results["failed"] += 1
                        logger.error(
                            "Timer %s gave up after %d attempts: %s", key, timer.attempts, error,
                            extra={"event_type": "timer_failed"},
                        )
                    else:
                        results["retrying"] += 1
                db.session.commit()

        if results["due"]:
            logger.info("Timer poll: %s", results)
        return results

    @classmethod
    def list_timers(cls, status: str | None = None, limit: int = 100) -> list[TimerJob]:
        q = TimerJob.query
        if status:
            q = q.filter_by(status=status)
        return q.order_by(TimerJob.fire_at.asc()).limit(limit).all()

    @classmethod
    def _config(cls, key, default):
        return current_app.config.get(key, default)

    # ── Periodic jobs ─────────────────────────────────────────────────────

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_config=_get_default_schedule(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            app = current_app._get_current_object()

            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record is not None and not job_record.is_enabled:
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

            try:
                result = fn(app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)

            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "timer_poller": {"minutes": 1, "description": "Every minute"},
        "timer_reconciliation": {"minutes": 15, "description": "Every 15 minutes"},
    }
    return defaults.get(job_name, {"hours": 1, "description": "Hourly"})
