"""
PTW Engine
Approval Chain Builder.

Runs once per permit, at creation. Takes the company's policy, the permit
scope and risk flag, and produces a ``ChainPlan``:

    approvals      one StepAssignment per policy step, step 1 pending
    closure_steps  ordered closure policy only, all steps not yet reached
    closure_roles  any-of closure policy only, role → user snapshot
    stop_work      role → user snapshot for every stop-work role

``materialize`` writes the plan onto a new ``Permit`` as child rows. The
builder itself never touches the session.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ptw.models.permit import (
    FLOW_APPROVAL,
    FLOW_CLOSURE,
    PURPOSE_CLOSURE,
    PURPOSE_STOP_WORK,
    PermitApprovalStep,
    PermitRoleAssignment,
)
from ptw.services.directory import ApproverResolver, ResolutionScope
from ptw.services.policy_store import AnyOfClosure, OrderedClosure, PermitPolicy


@dataclass(frozen=True)
class StepAssignment:
    step: int
    role: str
    label: str
    required: bool
    approver_id: int | None
    status: str | None


@dataclass(frozen=True)
class RoleSnapshot:
    role: str
    label: str
    resolved_user_id: int | None


@dataclass(frozen=True)
class ChainPlan:
    is_high_risk: bool
    closure_mode: str
    approvals: tuple[StepAssignment, ...]
    closure_steps: tuple[StepAssignment, ...] = ()
    closure_roles: tuple[RoleSnapshot, ...] = ()
    stop_work: tuple[RoleSnapshot, ...] = field(default_factory=tuple)

    @property
    def unresolved_steps(self) -> list[StepAssignment]:
        return [s for s in self.approvals if s.approver_id is None]


def build_chain(
    policy: PermitPolicy,
    scope: ResolutionScope,
    is_high_risk: bool,
    resolver: ApproverResolver,
) -> ChainPlan:
    """Resolve the policy's chains against ``scope``."""
    approvals = tuple(
        StepAssignment(
            step=s.step,
            role=s.role,
            label=s.label,
            required=s.required,
            approver_id=resolver.resolve(s.role, scope),
            status="pending" if s.step == 1 else None,
        )
        for s in policy.chain_for(is_high_risk)
    )

    closure_steps: tuple[StepAssignment, ...] = ()
    closure_roles: tuple[RoleSnapshot, ...] = ()
    if isinstance(policy.closure, OrderedClosure):
        closure_steps = tuple(
            StepAssignment(
                step=s.step,
                role=s.role,
                label=s.label,
                required=s.required,
                approver_id=resolver.resolve(s.role, scope),
                status=None,
            )
            for s in policy.closure.steps
        )
    elif isinstance(policy.closure, AnyOfClosure):
        closure_roles = tuple(
            RoleSnapshot(role=r, label=policy.closure.label, resolved_user_id=resolver.resolve(r, scope))
            for r in policy.closure.roles
        )

    stop_work = tuple(
        RoleSnapshot(role=r.role, label=r.label, resolved_user_id=resolver.resolve(r.role, scope))
        for r in policy.stop_work_roles
    )

    return ChainPlan(
        is_high_risk=is_high_risk,
        closure_mode=policy.closure.mode,
        approvals=approvals,
        closure_steps=closure_steps,
        closure_roles=closure_roles,
        stop_work=stop_work,
    )


def _step_row(assignment: StepAssignment, flow: str) -> PermitApprovalStep:
    return PermitApprovalStep(
        flow=flow,
        step=assignment.step,
        role=assignment.role,
        label=assignment.label,
        required=assignment.required,
        approver_id=assignment.approver_id,
        status=assignment.status,
    )


def materialize(permit, plan: ChainPlan) -> None:
    """Attach the plan's child rows to a permit that has none yet."""
    permit.closure_mode = plan.closure_mode
    for a in plan.approvals:
        permit.steps.append(_step_row(a, FLOW_APPROVAL))
    for a in plan.closure_steps:
        permit.steps.append(_step_row(a, FLOW_CLOSURE))
    for r in plan.closure_roles:
        permit.role_assignments.append(PermitRoleAssignment(
            purpose=PURPOSE_CLOSURE, role=r.role, label=r.label, resolved_user_id=r.resolved_user_id,
        ))
    for r in plan.stop_work:
        permit.role_assignments.append(PermitRoleAssignment(
            purpose=PURPOSE_STOP_WORK, role=r.role, label=r.label, resolved_user_id=r.resolved_user_id,
        ))
