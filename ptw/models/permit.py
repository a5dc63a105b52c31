"""
PTW Engine
Permit-to-Work aggregate — permits and their owned sub-records.

Models:
    - Permit: the aggregate root; ``status`` is the single source of truth
    - PermitApprovalStep: one row per approval or ordered-closure step
    - PermitRoleAssignment: stop-work and any-of closure role snapshots
    - PermitExtension: append-only time-extension log

Child rows are only ever written through ``ptw.services.permit_service``.
Every transition touches ``Permit.updated_at`` so the parent row UPDATE
carries the optimistic-concurrency check on ``version``.
"""

from datetime import datetime, timezone

from ptw.models import db
from ptw.models.base import CompanyScopedModel
from ptw.utils.helpers import as_utc, isoformat


# ── Constants ────────────────────────────────────────────────────────────────

PERMIT_STATUSES = (
    "draft",
    "submitted",
    "approved",
    "active",
    "pending_closure",
    "closed",
    "rejected",
    "stopped",
    "expired",
)

TERMINAL_STATUSES = frozenset({"closed", "rejected", "stopped"})

PERMIT_TRANSITIONS = {
    "draft":           ["submitted"],
    "submitted":       ["submitted", "approved", "rejected"],   # submitted→submitted = next step
    "approved":        ["active"],
    "active":          ["pending_closure", "stopped", "expired", "active"],  # active→active = extension
    "pending_closure": ["closed", "active"],                    # closure rejected → back to active
    "expired":         ["active"],                              # extension revives
    "closed":          [],
    "rejected":        [],
    "stopped":         [],
}

WORK_TYPES = frozenset({
    "hot_work",
    "cold_work",
    "electrical",
    "confined_space",
    "working_at_height",
    "excavation",
})

HIGH_RISK_WORK_TYPES = frozenset({
    "hot_work",
    "electrical",
    "confined_space",
    "working_at_height",
    "excavation",
})

SHIFTS = frozenset({"day", "night", "24hour"})

STEP_STATUSES = frozenset({"pending", "approved", "rejected"})
DECIDED_STEP_STATUSES = frozenset({"approved", "rejected"})

FLOW_APPROVAL = "approval"
FLOW_CLOSURE = "closure"

PURPOSE_STOP_WORK = "stop_work"
PURPOSE_CLOSURE = "closure"

CLOSURE_MODES = frozenset({"ordered", "anyOf"})


def validate_permit_transition(old_status, new_status):
    """Return True if Permit status transition is valid."""
    return new_status in PERMIT_TRANSITIONS.get(old_status, [])


class Permit(CompanyScopedModel):
    """
    Permit-to-Work aggregate root.

    Immutable after creation: permit_number, types, is_high_risk, plant_id,
    area_id, requested_by. expires_at moves only on approval (provisional),
    activation and extension.
    """

    __tablename__ = "permits"

    id = db.Column(db.Integer, primary_key=True)
    permit_number = db.Column(db.String(40), nullable=False)

    plant_id = db.Column(db.Integer, db.ForeignKey("plants.id", ondelete="CASCADE"), nullable=False, index=True)
    area_id = db.Column(db.Integer, db.ForeignKey("areas.id", ondelete="SET NULL"), nullable=True, index=True)
    requested_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Classification
    types = db.Column(db.JSON, default=list)
    is_high_risk = db.Column(db.Boolean, nullable=False, default=False)

    # Work detail: carried opaquely, never interpreted by the engine
    work_description = db.Column(db.Text, nullable=False)
    location = db.Column(db.JSON, default=dict)
    contractor = db.Column(db.JSON, default=dict)
    workers = db.Column(db.JSON, default=list)
    hazards = db.Column(db.JSON, default=list)
    ppe = db.Column(db.JSON, default=list)
    safety_checklist = db.Column(db.JSON, default=list)

    # Schedule & timing
    schedule_start = db.Column(db.DateTime(timezone=True), nullable=True)
    schedule_end = db.Column(db.DateTime(timezone=True), nullable=True)
    shift = db.Column(db.String(10), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    activated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    # Closure
    closure_mode = db.Column(db.String(10), nullable=False, default="anyOf",
                             comment="Snapshotted from policy at creation: ordered | anyOf")
    closure = db.Column(db.JSON, nullable=True, comment="Current closure submission payload")
    closure_approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                    nullable=True, index=True)
    closure_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closure_history = db.Column(db.JSON, default=list, comment="Rejected closure attempts, append-only")

    # Stop work
    stop_details = db.Column(db.JSON, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("company_id", "permit_number", name="uq_permit_company_number"),
        db.Index("ix_permits_company_status", "company_id", "status"),
        db.Index("ix_permits_company_plant", "company_id", "plant_id"),
    )
    __mapper_args__ = {"version_id_col": version}

    steps = db.relationship(
        "PermitApprovalStep",
        back_populates="permit",
        cascade="all, delete-orphan",
        order_by="PermitApprovalStep.step",
    )
    role_assignments = db.relationship(
        "PermitRoleAssignment",
        back_populates="permit",
        cascade="all, delete-orphan",
        order_by="PermitRoleAssignment.id",
    )
    extensions = db.relationship(
        "PermitExtension",
        back_populates="permit",
        cascade="all, delete-orphan",
        order_by="PermitExtension.id",
    )

    # ── Sub-record views ─────────────────────────────────────────────────

    @property
    def approvals(self):
        return sorted((s for s in self.steps if s.flow == FLOW_APPROVAL), key=lambda s: s.step)

    @property
    def closure_flow(self):
        return sorted((s for s in self.steps if s.flow == FLOW_CLOSURE), key=lambda s: s.step)

    @property
    def stop_work_roles(self):
        return [a for a in self.role_assignments if a.purpose == PURPOSE_STOP_WORK]

    @property
    def closure_approvers(self):
        return [a for a in self.role_assignments if a.purpose == PURPOSE_CLOSURE]

    def pending_step(self, flow=FLOW_APPROVAL):
        """Return the single pending step of ``flow``, or None."""
        for s in (self.approvals if flow == FLOW_APPROVAL else self.closure_flow):
            if s.status == "pending":
                return s
        return None

    def find_step(self, step, flow=FLOW_APPROVAL):
        for s in (self.approvals if flow == FLOW_APPROVAL else self.closure_flow):
            if s.step == step:
                return s
        return None

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @property
    def warnings(self):
        """Operator-facing conditions that do not block inspection.

        Currently only the "no approver configured" condition: the step that
        is waiting for a decision has nobody assigned to it.
        """
        out = []
        for flow in (FLOW_APPROVAL, FLOW_CLOSURE):
            pending = self.pending_step(flow)
            if pending is not None and pending.approver_id is None:
                out.append({
                    "code": "UNRESOLVED_APPROVER",
                    "flow": flow,
                    "step": pending.step,
                    "role": pending.role,
                    "message": f"No approver configured for {flow} step {pending.step} ({pending.role})",
                })
        return out

    def is_expired_at(self, moment):
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at <= as_utc(moment)

    def to_dict(self, include_children=True):
        d = {
            "id": self.id,
            "permit_number": self.permit_number,
            "company_id": self.company_id,
            "plant_id": self.plant_id,
            "area_id": self.area_id,
            "requested_by": self.requested_by,
            "types": self.types or [],
            "is_high_risk": self.is_high_risk,
            "work_description": self.work_description,
            "location": self.location or {},
            "contractor": self.contractor or {},
            "workers": self.workers or [],
            "hazards": self.hazards or [],
            "ppe": self.ppe or [],
            "safety_checklist": self.safety_checklist or [],
            "schedule": {
                "start_date": isoformat(self.schedule_start),
                "end_date": isoformat(self.schedule_end),
                "shift": self.shift,
            },
            "expires_at": isoformat(self.expires_at),
            "approved_at": isoformat(self.approved_at),
            "activated_at": isoformat(self.activated_at),
            "activated_by": self.activated_by,
            "status": self.status,
            "closure_mode": self.closure_mode,
            "closure": self.closure,
            "closure_approved_by": self.closure_approved_by,
            "closure_approved_at": isoformat(self.closure_approved_at),
            "closure_history": self.closure_history or [],
            "stop_details": self.stop_details,
            "version": self.version,
            "warnings": self.warnings,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_children:
            d["approvals"] = [s.to_dict() for s in self.approvals]
            d["closure_flow"] = [s.to_dict() for s in self.closure_flow]
            d["closure_approvers"] = [a.to_dict() for a in self.closure_approvers]
            d["stop_work_roles"] = [a.to_dict() for a in self.stop_work_roles]
            d["extensions"] = [e.to_dict() for e in self.extensions]
        return d

    def __repr__(self):
        return f"<Permit {self.permit_number} [{self.status}]>"


class PermitApprovalStep(db.Model):
    """
    One step of a permit's approval chain or ordered closure chain.

    Materialised once at creation; afterwards only status / comments /
    decided_at / decided_by change (plus approver_id through administrative
    reassignment of an undecided step). ``status`` is NULL until the step
    is reached.
    """

    __tablename__ = "permit_approval_steps"
    __table_args__ = (
        db.UniqueConstraint("permit_id", "flow", "step", name="uq_permit_step_flow"),
    )

    id = db.Column(db.Integer, primary_key=True)
    permit_id = db.Column(db.Integer, db.ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)
    flow = db.Column(db.String(10), nullable=False, default=FLOW_APPROVAL, comment="approval | closure")
    step = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(30), nullable=False)
    label = db.Column(db.String(200), default="")
    required = db.Column(db.Boolean, default=True)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    status = db.Column(db.String(10), nullable=True, comment="NULL until reached: pending | approved | rejected")
    comments = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    permit = db.relationship("Permit", back_populates="steps")

    @property
    def is_decided(self):
        return self.status in DECIDED_STEP_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "flow": self.flow,
            "step": self.step,
            "role": self.role,
            "label": self.label,
            "required": self.required,
            "approver_id": self.approver_id,
            "status": self.status,
            "comments": self.comments,
            "decided_at": isoformat(self.decided_at),
            "decided_by": self.decided_by,
        }

    def __repr__(self):
        return f"<PermitApprovalStep permit={self.permit_id} {self.flow}#{self.step} {self.role} [{self.status}]>"


class PermitRoleAssignment(db.Model):
    """Role → user snapshot taken at permit creation.

    Later personnel changes do not alter who may stop an active permit or
    close it under an any-of closure policy.
    """

    __tablename__ = "permit_role_assignments"

    id = db.Column(db.Integer, primary_key=True)
    permit_id = db.Column(db.Integer, db.ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)
    purpose = db.Column(db.String(20), nullable=False, comment="stop_work | closure")
    role = db.Column(db.String(30), nullable=False)
    label = db.Column(db.String(200), default="")
    resolved_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    permit = db.relationship("Permit", back_populates="role_assignments")

    def to_dict(self):
        return {
            "purpose": self.purpose,
            "role": self.role,
            "label": self.label,
            "resolved_user_id": self.resolved_user_id,
        }


class PermitExtension(db.Model):
    """Append-only record of one granted time extension."""

    __tablename__ = "permit_extensions"

    id = db.Column(db.Integer, primary_key=True)
    permit_id = db.Column(db.Integer, db.ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)
    hours = db.Column(db.Float, nullable=False)
    requested_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approver_role = db.Column(db.String(30), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    previous_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    new_expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    permit = db.relationship("Permit", back_populates="extensions")

    def to_dict(self):
        return {
            "id": self.id,
            "hours": self.hours,
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "approver_role": self.approver_role,
            "comments": self.comments,
            "previous_expires_at": isoformat(self.previous_expires_at),
            "new_expires_at": isoformat(self.new_expires_at),
            "timestamp": isoformat(self.created_at),
        }
