"""
PTW Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from ptw.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_EVENT_KINDS = {
    "permit_submitted",
    "permit_pending_approval",
    "permit_approved",
    "permit_rejected",
    "permit_activated",
    "permit_closure_requested",
    "permit_closure_rejected",
    "permit_closed",
    "permit_stopped",
    "permit_extended",
    "permit_expiring",
    "permit_expired",
    "approver_unassigned",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    event_kind = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="permit")
    entity_id = db.Column(db.Integer, nullable=True)
    payload = db.Column(db.JSON, default=dict, comment="Event metadata as handed to notify()")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "recipient_id": self.recipient_id,
            "event_kind": self.event_kind,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": self.payload or {},
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.event_kind} → {self.recipient_id}>"
