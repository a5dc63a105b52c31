"""
PTW Engine
Notification Service.

The engine's notification sink: ``notify(recipient_id, event_kind, metadata)``
persists one in-app record per call. Delivery channels (email, push) are not
part of this service.

Callers inside permit transitions wrap ``notify`` in
``run_side_effect`` so a failing insert never undoes a committed transition.
"""

import logging
from datetime import datetime, timezone

from ptw.models import db
from ptw.models.notification import NOTIFICATION_EVENT_KINDS, Notification

logger = logging.getLogger(__name__)


# event_kind → (title template, severity)
_EVENT_TEMPLATES = {
    "permit_submitted": ("Permit {permit_number} submitted", "info"),
    "permit_pending_approval": ("Permit {permit_number} awaits your approval", "info"),
    "permit_approved": ("Permit {permit_number} approved", "success"),
    "permit_rejected": ("Permit {permit_number} rejected", "error"),
    "permit_activated": ("Permit {permit_number} is now active", "info"),
    "permit_closure_requested": ("Closure requested for permit {permit_number}", "info"),
    "permit_closure_rejected": ("Closure of permit {permit_number} rejected", "warning"),
    "permit_closed": ("Permit {permit_number} closed", "success"),
    "permit_stopped": ("STOP WORK: permit {permit_number}", "error"),
    "permit_extended": ("Permit {permit_number} extended", "info"),
    "permit_expiring": ("Permit {permit_number} expires soon", "warning"),
    "permit_expired": ("Permit {permit_number} expired", "warning"),
    "approver_unassigned": ("No approver configured for permit {permit_number}", "warning"),
}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(recipient_id, event_kind, metadata=None, *, company_id=None, entity_id=None, message=""):
        """
        Create a single notification record for ``recipient_id``.

        A ``None`` recipient (unresolved approver) is skipped with a log line.

        Returns:
            The created Notification instance (already committed), or None.
        """
        if event_kind not in NOTIFICATION_EVENT_KINDS:
            raise ValueError(f"Unknown notification event kind: {event_kind}")

        metadata = dict(metadata or {})
        if recipient_id is None:
            logger.info(
                "Notification %s skipped: no recipient (permit=%s)",
                event_kind, entity_id,
                extra={"permit_id": entity_id, "event_type": "notification_skipped"},
            )
            return None

        title_tpl, severity = _EVENT_TEMPLATES[event_kind]
        notif = Notification(
            company_id=company_id,
            recipient_id=recipient_id,
            event_kind=event_kind,
            title=title_tpl.format(permit_number=metadata.get("permit_number", entity_id)),
            message=message or metadata.get("message", ""),
            severity=severity,
            entity_type="permit",
            entity_id=entity_id,
            payload=metadata,
        )
        db.session.add(notif)
        db.session.commit()
        logger.debug("Notification %s → user %s", event_kind, recipient_id)
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read. Other users' records are invisible."""
        notif = Notification.query.filter_by(id=notification_id, recipient_id=recipient_id).first()
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        count = Notification.query.filter_by(recipient_id=recipient_id, is_read=False).update(
            {"is_read": True, "read_at": now}, synchronize_session="fetch",
        )
        db.session.commit()
        return count
