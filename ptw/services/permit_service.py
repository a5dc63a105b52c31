"""
PTW Engine — Permit State Machine (service layer).

Business logic for:
    - Permit number generation:  PTW2406001, PTW2406002 (company + month scoped)
    - Work type normalisation and high-risk classification
    - Creation: policy → approver resolution → chain materialisation
    - Transitions: submit, decide, activate, request_closure, decide_closure,
      stop, extend, expire
    - Administrative repair: reassign_approver, delete_permit (draft only)
    - Read path: get_permit, list_permits, dashboard_stats (visibility scoped)

Every transition is one read-modify-write of the permit aggregate:
load (company scoped) → check ``expected_version`` → validate state and
caller → mutate → commit. The commit carries the optimistic-concurrency
check on ``Permit.version``; a lost race surfaces as ``VersionConflictError``
(or ``AlreadyDecidedError`` when the winner decided the same step).

Side effects (notifications, expiry timers) run after the commit through
``run_side_effect`` and never undo it.
"""

import logging
import math
import re
from datetime import timedelta

from sqlalchemy import String, cast, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ptw.core.exceptions import (
    AlreadyDecidedError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    UnauthorizedError,
    UnresolvedApproverError,
    ValidationError,
    VersionConflictError,
)
from ptw.models import db
from ptw.models.organization import Area, Company, Plant
from ptw.models.permit import (
    FLOW_APPROVAL,
    FLOW_CLOSURE,
    HIGH_RISK_WORK_TYPES,
    PERMIT_STATUSES,
    SHIFTS,
    WORK_TYPES,
    Permit,
    PermitExtension,
    validate_permit_transition,
)
from ptw.services.approval_chain import build_chain, materialize
from ptw.services.directory import ApproverResolver, DirectoryService, ResolutionScope
from ptw.services.expiry_scheduler import cancel_permit_jobs, schedule_expiry_jobs
from ptw.services.helpers.scoped_queries import get_scoped
from ptw.services.helpers.side_effects import run_side_effect
from ptw.services.notification import NotificationService
from ptw.services.policy_store import get_policy
from ptw.services.visibility import can_view, permit_visibility_filter
from ptw.utils.helpers import as_utc, isoformat, parse_datetime, utcnow

logger = logging.getLogger(__name__)

DECISIONS = {"approve": "approved", "approved": "approved", "reject": "rejected", "rejected": "rejected"}
_NUMBER_ATTEMPTS = 3


# ── Classification & numbering ───────────────────────────────────────────────


def normalize_work_type(value) -> str:
    """Map ``confinedSpace`` / ``confined-space`` / ``Confined Space`` to ``confined_space``."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Work type must be a non-empty string", details={"types": repr(value)})
    raw = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", value.strip())
    normalised = re.sub(r"[\s\-]+", "_", raw).lower()
    if normalised not in WORK_TYPES:
        raise ValidationError(
            f"Unknown work type '{value}'",
            details={"types": f"must be one of {sorted(WORK_TYPES)}"},
        )
    return normalised


def compute_is_high_risk(types, declared=False) -> bool:
    """High risk when declared OR any type is in the high-risk set.

    The declared flag can only escalate: omitting it never downgrades a
    permit whose types are high risk.
    """
    return bool(declared) or any(t in HIGH_RISK_WORK_TYPES for t in types)


def generate_permit_number(company_id: int, now=None) -> str:
    """Generate the next permit number: <prefix><YYMM><NNN>, unique per company."""
    now = as_utc(now) or utcnow()
    company = db.session.get(Company, company_id)
    prefix = ((company.settings or {}).get("permit_prefix") if company else None) or "PTW"
    stem = f"{prefix}{now:%y%m}"

    existing = (
        db.session.query(Permit.permit_number)
        .filter(Permit.company_id == company_id, Permit.permit_number.like(f"{stem}%"))
        .all()
    )
    highest = 0
    for (number,) in existing:
        suffix = number[len(stem):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{stem}{highest + 1:03d}"


# ── Internal helpers ─────────────────────────────────────────────────────────


def _now(now):
    return as_utc(now) or utcnow()


def _parse_step(step):
    if step is None:
        return None
    try:
        return int(step)
    except (TypeError, ValueError):
        raise ValidationError("step must be an integer", details={"step": repr(step)}) from None


def _load(permit_id, identity, expected_version=None) -> Permit:
    permit = get_scoped(Permit, permit_id, company_id=identity.company_id)
    if expected_version is not None and permit.version != int(expected_version):
        raise VersionConflictError(permit.id, expected_version=int(expected_version), actual_version=permit.version)
    return permit


def _set_status(permit, new_status, action):
    if not validate_permit_transition(permit.status, new_status):
        raise InvalidStateError(permit, action)
    permit.status = new_status


def _commit(permit, now, expected_version=None, decided=None):
    """Commit the aggregate; translate a lost optimistic-lock race.

    ``decided`` is ``(flow, step)`` for decision transitions so a race lost
    to a writer who decided the same step reports ``AlreadyDecidedError``.
    """
    permit_id = permit.id
    permit.updated_at = now
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        fresh = db.session.get(Permit, permit_id)
        if fresh is not None:
            db.session.refresh(fresh)
        if fresh is not None and decided is not None:
            step = fresh.find_step(decided[1], decided[0])
            if step is not None and step.is_decided:
                raise AlreadyDecidedError(permit_id, step.step, step.status, flow=decided[0])
        raise VersionConflictError(
            permit_id,
            expected_version=expected_version,
            actual_version=fresh.version if fresh is not None else None,
        )


def _notify(permit, recipient_id, event_kind, **extra):
    metadata = {
        "permit_id": permit.id,
        "permit_number": permit.permit_number,
        "status": permit.status,
        **extra,
    }
    run_side_effect(
        f"notify:{event_kind}",
        NotificationService.notify,
        recipient_id,
        event_kind,
        metadata,
        company_id=permit.company_id,
        entity_id=permit.id,
        permit_id=permit.id,
    )


def _notify_many(permit, recipient_ids, event_kind, exclude=None, **extra):
    seen = set()
    for rid in recipient_ids:
        if rid is None or rid == exclude or rid in seen:
            continue
        seen.add(rid)
        _notify(permit, rid, event_kind, **extra)


def _warn_unresolved(permit, step):
    warning = UnresolvedApproverError(permit.id, step.step, step.role, flow=step.flow)
    logger.warning(
        "%s", warning,
        extra={"company_id": permit.company_id, "permit_id": permit.id, "event_type": "approver_unassigned"},
    )
    _notify(permit, permit.requested_by, "approver_unassigned",
            flow=step.flow, step=step.step, role=step.role)
    return warning


def _notify_pending(permit, flow):
    step = permit.pending_step(flow)
    if step is None:
        return
    if step.approver_id is None:
        _warn_unresolved(permit, step)
        return
    event = "permit_pending_approval" if flow == FLOW_APPROVAL else "permit_closure_requested"
    _notify(permit, step.approver_id, event, flow=flow, step=step.step, role=step.role)


def _normalize_decision(decision):
    result = DECISIONS.get(str(decision or "").strip().lower())
    if result is None:
        raise ValidationError("decision must be 'approve' or 'reject'", details={"decision": repr(decision)})
    return result


def _require_requester(permit, identity, action):
    if identity.user_id != permit.requested_by:
        raise UnauthorizedError(
            f"Only the requester may {action} permit {permit.permit_number}",
            details={"permit_id": permit.id, "action": action},
        )


def _timers_on(permit, now):
    policy = get_policy(permit.company_id)
    schedule_expiry_jobs(permit.id, permit.expires_at, reminder_lead_hours=policy.reminder_lead_hours, now=now)


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


def _parse_create_input(company_id, data):
    errors = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")

    work_description = (data.get("work_description") or "").strip()
    if not work_description:
        errors["work_description"] = "required"

    plant = None
    plant_id = data.get("plant_id")
    if plant_id is None:
        errors["plant_id"] = "required"
    else:
        plant = Plant.query_for_company(company_id).filter_by(id=plant_id).first()
        if plant is None or not plant.is_active:
            errors["plant_id"] = "unknown or inactive plant"

    area_id = data.get("area_id")
    if area_id is not None and plant is not None:
        area = Area.query_for_company(company_id).filter_by(id=area_id, plant_id=plant.id).first()
        if area is None or not area.is_active:
            errors["area_id"] = "unknown or inactive area for this plant"

    raw_types = data.get("types")
    if isinstance(raw_types, str):
        raw_types = [raw_types]
    types = []
    if not raw_types or not isinstance(raw_types, list):
        errors["types"] = "at least one work type is required"
    else:
        for value in raw_types:
            try:
                t = normalize_work_type(value)
            except ValidationError as exc:
                errors["types"] = str(exc)
                continue
            if t not in types:
                types.append(t)

    schedule = data.get("schedule") or {}
    if not isinstance(schedule, dict):
        errors["schedule"] = "must be an object"
        schedule = {}
    start = end = None
    try:
        start = parse_datetime(schedule.get("start_date", data.get("start_date")))
        end = parse_datetime(schedule.get("end_date", data.get("end_date")))
    except ValueError as exc:
        errors["schedule"] = str(exc)
    if start and end and end < start:
        errors["schedule.end_date"] = "must not be before start_date"

    shift = schedule.get("shift", data.get("shift"))
    if shift is not None and shift not in SHIFTS:
        errors["schedule.shift"] = f"must be one of {sorted(SHIFTS)}"

    if errors:
        raise ValidationError("Invalid permit data", details=errors)

    declared = data.get("is_high_risk", data.get("isHighRisk", False))
    return {
        "plant_id": plant.id,
        "area_id": area_id,
        "types": types,
        "declared_high_risk": declared is True or str(declared).lower() == "true",
        "work_description": work_description,
        "schedule_start": start,
        "schedule_end": end,
        "shift": shift,
    }


def create_permit(company_id, data, identity, *, now=None) -> Permit:
    """Create a permit in ``draft`` with its approval chain materialised.

    Args:
        company_id: Tenant the permit belongs to; must match the caller's.
        data: Validated-shape input from the blueprint.
        identity: Caller; becomes ``requested_by``.

    Returns:
        The persisted Permit.
    """
    now = _now(now)
    if identity.company_id != company_id:
        raise NotFoundError(resource="Company", resource_id=company_id)

    fields = _parse_create_input(company_id, data)
    is_high_risk = compute_is_high_risk(fields["types"], fields["declared_high_risk"])
    if fields["declared_high_risk"] is False and is_high_risk:
        logger.info("Permit classified high risk from types %s", fields["types"],
                    extra={"company_id": company_id, "event_type": "high_risk_escalated"})

    policy = get_policy(company_id)
    scope = ResolutionScope(company_id=company_id, plant_id=fields["plant_id"], area_id=fields["area_id"])
    plan = build_chain(policy, scope, is_high_risk, ApproverResolver(DirectoryService()))

    for attempt in range(_NUMBER_ATTEMPTS):
        permit = Permit(
            company_id=company_id,
            permit_number=generate_permit_number(company_id, now),
            plant_id=fields["plant_id"],
            area_id=fields["area_id"],
            requested_by=identity.user_id,
            types=fields["types"],
            is_high_risk=is_high_risk,
            work_description=fields["work_description"],
            location=data.get("location") or {},
            contractor=data.get("contractor") or {},
            workers=data.get("workers") or [],
            hazards=data.get("hazards") or [],
            ppe=data.get("ppe") or [],
            safety_checklist=data.get("safety_checklist") or [],
            schedule_start=fields["schedule_start"],
            schedule_end=fields["schedule_end"],
            shift=fields["shift"],
            status="draft",
            created_at=now,
            updated_at=now,
        )
        materialize(permit, plan)
        db.session.add(permit)
        try:
            db.session.commit()
            break
        except IntegrityError:
            db.session.rollback()
            logger.warning("Permit number collision on attempt %d, retrying", attempt + 1)
    else:
        raise ConflictError("Permit", "permit_number", permit.permit_number)

    logger.info(
        "Permit created id=%s number=%s high_risk=%s steps=%d",
        permit.id, permit.permit_number, permit.is_high_risk, len(plan.approvals),
        extra={"company_id": company_id, "permit_id": permit.id, "event_type": "permit_created"},
    )
    for unresolved in plan.unresolved_steps:
        logger.warning(
            "Permit %s step %d (%s) has no approver configured",
            permit.permit_number, unresolved.step, unresolved.role,
            extra={"company_id": company_id, "permit_id": permit.id, "event_type": "approver_unassigned"},
        )
    return permit


# ═════════════════════════════════════════════════════════════════════════════
# Approval flow
# ═════════════════════════════════════════════════════════════════════════════


def submit(permit_id, identity, *, expected_version=None, now=None) -> Permit:
    """draft → submitted. Requester only; notifies the step-1 approver."""
    now = _now(now)
    permit = _load(permit_id, identity, expected_version)
    if permit.status != "draft":
        raise InvalidStateError(permit, "submit", expected=("draft",))
    _require_requester(permit, identity, "submit")

    first = permit.find_step(1)
    if first is not None and first.status is None:
        first.status = "pending"
    _set_status(permit, "submitted", "submit")
    _commit(permit, now, expected_version)

    logger.info("Permit %s submitted", permit.permit_number,
                extra={"permit_id": permit.id, "event_type": "permit_submitted"})
    _notify_pending(permit, FLOW_APPROVAL)
    return permit


def decide(permit_id, identity, decision, comments=None, *, step=None, expected_version=None, now=None) -> Permit:
    """Approve or reject the pending approval step.

    The caller must be the resolved approver of the single pending step.
    Approving the last step moves the permit to ``approved`` with a
    provisional ``expires_at``; any reject is terminal.

    Raises:
        AlreadyDecidedError: the targeted (or the caller's own) step already
            carries a decision, including when a concurrent caller won.
        InvalidStateError: permit is not ``submitted``.
        UnauthorizedError: caller is not the pending step's approver.
    """
    now = _now(now)
    outcome = _normalize_decision(decision)
    permit = _load(permit_id, identity, expected_version)

    step = _parse_step(step)
    if step is not None:
        target = permit.find_step(step)
        if target is None:
            raise ValidationError(f"Permit has no approval step {step}", details={"step": step})
        if target.is_decided:
            raise AlreadyDecidedError(permit.id, target.step, target.status)

    pending = permit.pending_step(FLOW_APPROVAL)
    if step is None and (pending is None or pending.approver_id != identity.user_id):
        own = [s for s in permit.approvals if s.approver_id == identity.user_id and s.is_decided]
        if own:
            raise AlreadyDecidedError(permit.id, own[-1].step, own[-1].status)

    if permit.status != "submitted" or pending is None:
        raise InvalidStateError(permit, "decide", expected=("submitted",))
    if step is not None and step != pending.step:
        raise UnauthorizedError(
            f"Step {step} is not open; step {pending.step} is pending",
            details={"permit_id": permit.id, "pending_step": pending.step, "step": step},
        )
    if pending.approver_id is None or pending.approver_id != identity.user_id:
        raise UnauthorizedError(
            f"Only the approver of step {pending.step} ({pending.role}) may decide",
            details={"permit_id": permit.id, "step": pending.step, "role": pending.role},
        )

    pending.status = outcome
    pending.comments = comments
    pending.decided_at = now
    pending.decided_by = identity.user_id

    nxt = None
    if outcome == "rejected":
        _set_status(permit, "rejected", "reject")
    else:
        nxt = permit.find_step(pending.step + 1)
        if nxt is not None:
            nxt.status = "pending"
            _set_status(permit, "submitted", "approve")
        else:
            policy = get_policy(permit.company_id)
            _set_status(permit, "approved", "approve")
            permit.approved_at = now
            permit.expires_at = now + timedelta(hours=policy.default_expiry_hours)

    decided_step = pending.step
    _commit(permit, now, expected_version, decided=(FLOW_APPROVAL, decided_step))
    logger.info(
        "Permit %s step %d %s by user %s → %s",
        permit.permit_number, decided_step, outcome, identity.user_id, permit.status,
        extra={"permit_id": permit.id, "event_type": f"step_{outcome}"},
    )

    if outcome == "rejected":
        cancel_permit_jobs(permit.id)
        _notify(permit, permit.requested_by, "permit_rejected", step=decided_step, comments=comments)
    elif nxt is not None:
        _notify_pending(permit, FLOW_APPROVAL)
    else:
        _timers_on(permit, now)
        _notify(permit, permit.requested_by, "permit_approved", expires_at=isoformat(permit.expires_at))
    return permit


def activate(permit_id, identity, *, expected_version=None, now=None) -> Permit:
    """approved → active. Requester only; arms expiry timers."""
    now = _now(now)
    permit = _load(permit_id, identity, expected_version)
    if permit.status != "approved":
        raise InvalidStateError(permit, "activate", expected=("approved",))
    _require_requester(permit, identity, "activate")

    _set_status(permit, "active", "activate")
    permit.activated_at = now
    permit.activated_by = identity.user_id
    if permit.schedule_end is not None:
        permit.expires_at = as_utc(permit.schedule_end)
    elif permit.expires_at is None:
        permit.expires_at = now + timedelta(hours=get_policy(permit.company_id).default_expiry_hours)
    _commit(permit, now, expected_version)

    logger.info("Permit %s activated, expires %s", permit.permit_number, isoformat(permit.expires_at),
                extra={"permit_id": permit.id, "event_type": "permit_activated"})
    _timers_on(permit, now)
    _notify_many(permit, [s.approver_id for s in permit.approvals], "permit_activated",
                 exclude=identity.user_id, expires_at=isoformat(permit.expires_at))
    return permit


# ═════════════════════════════════════════════════════════════════════════════
# Closure
# ═════════════════════════════════════════════════════════════════════════════


def request_closure(permit_id, identity, payload=None, *, expected_version=None, now=None) -> Permit:
    """active → pending_closure with the closure checklist payload."""
    now = _now(now)
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError("Closure payload must be an object")
    permit = _load(permit_id, identity, expected_version)
    if permit.status != "active":
        raise InvalidStateError(permit, "request closure", expected=("active",))
    _require_requester(permit, identity, "request closure of")

    permit.closure = {
        **(payload or {}),
        "submitted_by": identity.user_id,
        "submitted_at": isoformat(now),
    }
    if permit.closure_mode == "ordered":
        for s in permit.closure_flow:
            s.status = "pending" if s.step == 1 else None
    _set_status(permit, "pending_closure", "request closure")
    _commit(permit, now, expected_version)

    logger.info("Closure requested for permit %s (%s)", permit.permit_number, permit.closure_mode,
                extra={"permit_id": permit.id, "event_type": "closure_requested"})
    if permit.closure_mode == "ordered":
        _notify_pending(permit, FLOW_CLOSURE)
    else:
        recipients = [a.resolved_user_id for a in permit.closure_approvers]
        if not any(recipients):
            logger.warning("Permit %s has no closure approver configured", permit.permit_number,
                           extra={"permit_id": permit.id, "event_type": "approver_unassigned"})
        _notify_many(permit, recipients, "permit_closure_requested")
    return permit


def _revert_closure(permit, identity, comments, now):
    archived = {
        **(permit.closure or {}),
        "rejected_by": identity.user_id,
        "rejected_at": isoformat(now),
        "rejection_comments": comments,
    }
    if permit.closure_mode == "ordered":
        archived["steps"] = [s.to_dict() for s in permit.closure_flow]
        for s in permit.closure_flow:
            s.status = None
            s.comments = None
            s.decided_at = None
            s.decided_by = None
    # Reassign: JSON columns do not track in-place mutation.
    permit.closure_history = list(permit.closure_history or []) + [archived]
    permit.closure = None
    _set_status(permit, "active", "reject closure")


def _close(permit, identity, now):
    _set_status(permit, "closed", "close")
    permit.closure_approved_by = identity.user_id
    permit.closure_approved_at = now


def decide_closure(permit_id, identity, decision, comments=None, *, expected_version=None, now=None) -> Permit:
    """Approve or reject a pending closure.

    anyOf: one decision by a snapshotted closure approver (or an admin role)
    closes the permit. ordered: steps are decided in order like approvals.
    A reject in either mode reverts to ``active`` and archives the payload.
    """
    now = _now(now)
    outcome = _normalize_decision(decision)
    permit = _load(permit_id, identity, expected_version)
    decided = None

    if permit.closure_mode == "ordered":
        pending = permit.pending_step(FLOW_CLOSURE)
        if pending is None or pending.approver_id != identity.user_id:
            own = [s for s in permit.closure_flow if s.approver_id == identity.user_id and s.is_decided]
            if own:
                raise AlreadyDecidedError(permit.id, own[-1].step, own[-1].status, flow=FLOW_CLOSURE)
        if permit.status != "pending_closure" or pending is None:
            raise InvalidStateError(permit, "decide closure", expected=("pending_closure",))
        if pending.approver_id is None or pending.approver_id != identity.user_id:
            raise UnauthorizedError(
                f"Only the approver of closure step {pending.step} ({pending.role}) may decide",
                details={"permit_id": permit.id, "step": pending.step, "role": pending.role},
            )
        pending.status = outcome
        pending.comments = comments
        pending.decided_at = now
        pending.decided_by = identity.user_id
        decided = (FLOW_CLOSURE, pending.step)

        if outcome == "rejected":
            _revert_closure(permit, identity, comments, now)
        else:
            nxt = permit.find_step(pending.step + 1, FLOW_CLOSURE)
            if nxt is not None:
                nxt.status = "pending"
            else:
                _close(permit, identity, now)
    else:
        if permit.status == "closed":
            raise AlreadyDecidedError(permit.id, 1, "approved", flow=FLOW_CLOSURE)
        if permit.status != "pending_closure":
            raise InvalidStateError(permit, "decide closure", expected=("pending_closure",))
        allowed = {a.resolved_user_id for a in permit.closure_approvers if a.resolved_user_id is not None}
        if identity.user_id not in allowed and not identity.is_admin:
            raise UnauthorizedError(
                f"User {identity.user_id} may not decide closure of permit {permit.permit_number}",
                details={"permit_id": permit.id, "roles": [a.role for a in permit.closure_approvers]},
            )
        if outcome == "rejected":
            _revert_closure(permit, identity, comments, now)
        else:
            _close(permit, identity, now)
            permit.closure = {**(permit.closure or {}), "approval_comments": comments}

    _commit(permit, now, expected_version, decided=decided)
    logger.info(
        "Closure of permit %s %s by user %s → %s",
        permit.permit_number, outcome, identity.user_id, permit.status,
        extra={"permit_id": permit.id, "event_type": f"closure_{outcome}"},
    )

    if permit.status == "closed":
        cancel_permit_jobs(permit.id)
        _notify(permit, permit.requested_by, "permit_closed", comments=comments)
    elif permit.status == "active":
        _notify(permit, permit.requested_by, "permit_closure_rejected", comments=comments)
        if permit.is_expired_at(now):
            # The expire timer no-ops during pending_closure; fire it again.
            _timers_on(permit, now)
    else:
        _notify_pending(permit, FLOW_CLOSURE)
    return permit


# ═════════════════════════════════════════════════════════════════════════════
# Interrupts & timing
# ═════════════════════════════════════════════════════════════════════════════


def stop(permit_id, identity, payload=None, *, expected_version=None, now=None) -> Permit:
    """active → stopped. Safety interrupt; bypasses step ordering.

    Allowed for the users snapshotted in ``stop_work_roles`` and for the
    administrative roles.
    """
    now = _now(now)
    payload = payload or {}
    if not isinstance(payload, dict):
        raise ValidationError("Stop payload must be an object")
    permit = _load(permit_id, identity, expected_version)
    if permit.status != "active":
        raise InvalidStateError(permit, "stop", expected=("active",))

    snapshot_ids = {r.resolved_user_id for r in permit.stop_work_roles if r.resolved_user_id is not None}
    if identity.user_id not in snapshot_ids and not identity.is_admin:
        raise UnauthorizedError(
            f"User {identity.user_id} is not authorised to stop permit {permit.permit_number}",
            details={"permit_id": permit.id, "roles": [r.role for r in permit.stop_work_roles]},
        )
    reason = (payload.get("reason") or payload.get("stop_reason") or "").strip()
    if not reason:
        raise ValidationError("A stop reason is required", details={"reason": "required"})

    permit.stop_details = {
        "reason": reason,
        "safety_issue": payload.get("safety_issue"),
        "immediate_actions": payload.get("immediate_actions"),
        "comments": payload.get("comments"),
        "stopped_by": identity.user_id,
        "stopped_by_role": identity.role,
        "stopped_at": isoformat(now),
    }
    _set_status(permit, "stopped", "stop")
    _commit(permit, now, expected_version)

    logger.warning(
        "STOP WORK on permit %s by user %s (%s): %s",
        permit.permit_number, identity.user_id, identity.role, reason,
        extra={"permit_id": permit.id, "event_type": "permit_stopped"},
    )
    cancel_permit_jobs(permit.id)
    recipients = [permit.requested_by]
    recipients += [s.approver_id for s in permit.approvals]
    recipients += [r.resolved_user_id for r in permit.stop_work_roles]
    _notify_many(permit, recipients, "permit_stopped", exclude=identity.user_id, reason=reason)
    return permit


def extend(permit_id, identity, hours, reason=None, *, expected_version=None, now=None) -> Permit:
    """Extend ``expires_at`` by ``hours`` within the caller role's cap.

    ``expires_at = max(expires_at, now) + hours``; an expired permit comes
    back to ``active``.

    Raises:
        ValidationError: hours not a positive number.
        PolicyViolationError: role has no cap, or hours exceed it.
        InvalidStateError: permit is neither ``active`` nor ``expired``.
    """
    now = _now(now)
    try:
        hours = float(hours)
    except (TypeError, ValueError):
        raise ValidationError("hours must be a number", details={"hours": repr(hours)}) from None
    if not math.isfinite(hours) or hours <= 0:
        raise ValidationError("hours must be a positive finite number", details={"hours": hours})

    permit = _load(permit_id, identity, expected_version)
    if permit.status not in ("active", "expired"):
        raise InvalidStateError(permit, "extend", expected=("active", "expired"))

    policy = get_policy(permit.company_id)
    cap = policy.max_extension_hours(identity.role)
    if cap is None:
        raise PolicyViolationError(
            f"Role '{identity.role}' is not authorised to extend permits",
            details={"role": identity.role, "hours": hours},
        )
    if hours > cap:
        raise PolicyViolationError(
            f"Extension of {hours:g}h exceeds the {cap:g}h allowed for role '{identity.role}'",
            details={"role": identity.role, "hours": hours, "max_hours": cap},
        )

    previous = as_utc(permit.expires_at)
    new_expires_at = max(previous or now, now) + timedelta(hours=hours)
    permit.extensions.append(PermitExtension(
        hours=hours,
        requested_by=permit.requested_by,
        approved_by=identity.user_id,
        approver_role=identity.role,
        comments=reason,
        previous_expires_at=previous,
        new_expires_at=new_expires_at,
        created_at=now,
    ))
    permit.expires_at = new_expires_at
    was_expired = permit.status == "expired"
    _set_status(permit, "active", "extend")
    _commit(permit, now, expected_version)

    logger.info(
        "Permit %s extended by %sh to %s%s",
        permit.permit_number, hours, isoformat(new_expires_at), " (revived)" if was_expired else "",
        extra={"permit_id": permit.id, "event_type": "permit_extended"},
    )
    _timers_on(permit, now)
    _notify(permit, permit.requested_by, "permit_extended", hours=hours,
            expires_at=isoformat(new_expires_at), reason=reason)
    return permit


def expire(permit_id, fired_at=None) -> Permit | None:
    """active → expired. Scheduler-only and idempotent.

    Re-reads the permit: anything not ``active``, or whose ``expires_at`` was
    pushed past ``fired_at`` by an extension, is left untouched.
    """
    now = _now(fired_at)
    permit = db.session.get(Permit, permit_id)
    if permit is None:
        logger.info("Expire timer for missing permit %s ignored", permit_id)
        return None
    db.session.refresh(permit)

    if permit.status != "active" or not permit.is_expired_at(now):
        logger.debug("Expire for permit %s is a no-op (status=%s expires_at=%s)",
                     permit_id, permit.status, isoformat(permit.expires_at))
        return permit

    _set_status(permit, "expired", "expire")
    _commit(permit, now)
    logger.info("Permit %s expired", permit.permit_number,
                extra={"permit_id": permit.id, "event_type": "permit_expired"})
    _notify(permit, permit.requested_by, "permit_expired", expires_at=isoformat(permit.expires_at))
    return permit


# ═════════════════════════════════════════════════════════════════════════════
# Administration
# ═════════════════════════════════════════════════════════════════════════════


def reassign_approver(permit_id, identity, step, approver_id, flow=FLOW_APPROVAL, *,
                      expected_version=None, now=None) -> Permit:
    """Point an undecided step at another active user of the company."""
    now = _now(now)
    if not identity.is_admin:
        raise UnauthorizedError("Only administrators may reassign approvers",
                                details={"role": identity.role})
    if flow not in (FLOW_APPROVAL, FLOW_CLOSURE):
        raise ValidationError("flow must be 'approval' or 'closure'", details={"flow": flow})
    permit = _load(permit_id, identity, expected_version)
    if permit.is_terminal:
        raise InvalidStateError(permit, "reassign approver")

    target = permit.find_step(_parse_step(step), flow)
    if target is None:
        raise ValidationError(f"Permit has no {flow} step {step}", details={"step": step})
    if target.is_decided:
        raise AlreadyDecidedError(permit.id, target.step, target.status, flow=flow)
    if not DirectoryService().is_active_member(approver_id, permit.company_id):
        raise ValidationError("Approver must be an active user of the company",
                              details={"approver_id": approver_id})

    previous = target.approver_id
    target.approver_id = approver_id
    _commit(permit, now, expected_version)

    logger.info(
        "Permit %s %s step %d reassigned %s → %s by user %s",
        permit.permit_number, flow, target.step, previous, approver_id, identity.user_id,
        extra={"permit_id": permit.id, "event_type": "approver_reassigned"},
    )
    if target.status == "pending":
        _notify_pending(permit, flow)
    return permit


def delete_permit(permit_id, identity) -> None:
    """Hard delete; only while still ``draft``."""
    permit = _load(permit_id, identity)
    if permit.status != "draft":
        raise InvalidStateError(permit, "delete", expected=("draft",))
    if identity.user_id != permit.requested_by and not identity.is_admin:
        raise UnauthorizedError("Only the requester or an administrator may delete a draft permit",
                                details={"permit_id": permit.id})
    number = permit.permit_number
    db.session.delete(permit)
    db.session.commit()
    logger.info("Draft permit %s deleted by user %s", number, identity.user_id,
                extra={"company_id": identity.company_id, "event_type": "permit_deleted"})


# ═════════════════════════════════════════════════════════════════════════════
# Read path
# ═════════════════════════════════════════════════════════════════════════════


def get_permit(permit_id, identity) -> Permit:
    """Load a permit the caller may see. Invisible permits are 'not found'."""
    permit = get_scoped(Permit, permit_id, company_id=identity.company_id)
    if not can_view(identity, permit):
        raise NotFoundError(resource="Permit", resource_id=permit_id)
    return permit


def list_permits(identity, *, status=None, plant_id=None, area_id=None, work_type=None,
                 search=None, page=1, per_page=20):
    """Return ``(permits, total)`` visible to ``identity``, newest first."""
    predicate = permit_visibility_filter(identity)
    if predicate is None:
        return [], 0

    q = Permit.query.filter(predicate)
    if status:
        if status not in PERMIT_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={"status": status})
        q = q.filter(Permit.status == status)
    if plant_id:
        q = q.filter(Permit.plant_id == plant_id)
    if area_id:
        q = q.filter(Permit.area_id == area_id)
    if work_type:
        t = normalize_work_type(work_type)
        q = q.filter(cast(Permit.types, String).like(f'%"{t}"%'))
    if search:
        term = f"%{search.strip()}%"
        q = q.filter(or_(Permit.permit_number.ilike(term), Permit.work_description.ilike(term)))

    total = q.count()
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), 100)
    items = (
        q.order_by(Permit.created_at.desc(), Permit.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total


def dashboard_stats(identity, *, now=None) -> dict:
    """Counts by status within the caller's visible set."""
    now = _now(now)
    by_status = {s: 0 for s in PERMIT_STATUSES}
    predicate = permit_visibility_filter(identity)
    if predicate is None:
        return {"total": 0, "by_status": by_status, "high_risk": 0, "expiring_soon": 0}

    rows = (
        db.session.query(Permit.status, func.count(Permit.id))
        .filter(predicate)
        .group_by(Permit.status)
        .all()
    )
    for status, count in rows:
        by_status[status] = count

    high_risk = Permit.query.filter(predicate, Permit.is_high_risk.is_(True)).count()
    lead = get_policy(identity.company_id).reminder_lead_hours
    expiring_soon = Permit.query.filter(
        predicate,
        Permit.status == "active",
        Permit.expires_at <= now + timedelta(hours=lead),
    ).count()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "high_risk": high_risk,
        "expiring_soon": expiring_soon,
    }
