"""
PTW Engine — Notifications & Scheduler Blueprint.

Notifications (caller's own inbox):
  GET  /api/v1/notifications                 – list (?unread_only, limit, offset)
  POST /api/v1/notifications/<id>/read       – mark one read
  POST /api/v1/notifications/read-all        – mark all read

Timers and periodic jobs (admin):
  GET  /api/v1/timers                        – list (?status, limit)
  POST /api/v1/timers/run-due                – fire due timers now
  GET  /api/v1/scheduler/jobs                – registered jobs + run history
  POST /api/v1/scheduler/jobs/<name>/run     – run one job now
  POST /api/v1/scheduler/jobs/<name>/toggle  – {enabled: bool}
"""

from flask import Blueprint, g, jsonify, request

from ptw.auth import require_admin, require_identity
from ptw.blueprints.errors import register_error_handlers
from ptw.core.exceptions import NotFoundError, ValidationError
from ptw.services.notification import NotificationService
from ptw.services.scheduler_service import SchedulerService

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)

_TRUTHY = ("1", "true", "yes", "on")


@notification_bp.route("/notifications", methods=["GET"])
@require_identity
def list_notifications():
    unread_only = request.args.get("unread_only", "false").lower() in _TRUTHY
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)

    items, total = NotificationService.list_for_recipient(
        g.identity.user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(g.identity.user_id),
    })


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
@require_identity
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, g.identity.user_id)
    if notif is None:
        raise NotFoundError(resource="Notification", resource_id=notification_id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
@require_identity
def mark_all_read():
    count = NotificationService.mark_all_read(g.identity.user_id)
    return jsonify({"marked_read": count})


# ── Timers / jobs ────────────────────────────────────────────────────────


@notification_bp.route("/timers", methods=["GET"])
@require_admin
def list_timers():
    limit = min(request.args.get("limit", 100, type=int), 500)
    timers = SchedulerService.list_timers(status=request.args.get("status"), limit=limit)
    return jsonify({"items": [t.to_dict() for t in timers], "total": len(timers)})


@notification_bp.route("/timers/run-due", methods=["POST"])
@require_admin
def run_due_timers():
    return jsonify(SchedulerService.run_due())


@notification_bp.route("/scheduler/jobs", methods=["GET"])
@require_admin
def list_jobs():
    return jsonify({"items": SchedulerService.list_jobs()})


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
@require_admin
def run_job(job_name):
    result = SchedulerService.run_job(job_name)
    if result["status"] == "error":
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["POST"])
@require_admin
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("enabled"), bool):
        raise ValidationError("enabled must be a boolean", details={"enabled": "required"})
    result = SchedulerService.toggle_job(job_name, data["enabled"])
    if result is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(result)
