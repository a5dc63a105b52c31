"""
Approval chain builder tests.

Tests cover:
  - normal vs high-risk chain selection
  - step 1 pending, later steps not yet reached
  - ordered vs any-of closure materialisation
  - stop-work snapshots
  - unresolved roles kept as unassigned steps
"""

from ptw.models.permit import Permit
from ptw.services.approval_chain import build_chain, materialize
from ptw.services.directory import ApproverResolver, ResolutionScope
from ptw.services.policy_store import DEFAULT_PTW_POLICY, parse_policy


def _scope(org, area):
    return ResolutionScope(company_id=org.company.id, plant_id=org.plant.id, area_id=area.id)


def test_normal_chain(org):
    plan = build_chain(parse_policy(DEFAULT_PTW_POLICY), _scope(org, org.area), False, ApproverResolver())

    assert [(a.step, a.role, a.status) for a in plan.approvals] == [
        (1, "hod", "pending"),
        (2, "safety_incharge", None),
    ]
    assert plan.approvals[0].approver_id == org.users["hod"].id
    assert plan.approvals[1].approver_id == org.users["safety_incharge"].id
    assert plan.unresolved_steps == []


def test_high_risk_chain(org):
    plan = build_chain(parse_policy(DEFAULT_PTW_POLICY), _scope(org, org.area), True, ApproverResolver())

    assert plan.is_high_risk
    assert [a.role for a in plan.approvals] == ["plant_head", "hod", "safety_incharge"]
    assert plan.approvals[0].approver_id == org.users["plant_head"].id


def test_any_of_closure_and_stop_snapshots(org):
    plan = build_chain(parse_policy(DEFAULT_PTW_POLICY), _scope(org, org.area), False, ApproverResolver())

    assert plan.closure_mode == "anyOf"
    assert plan.closure_steps == ()
    assert {r.role: r.resolved_user_id for r in plan.closure_roles} == {
        "hod": org.users["hod"].id,
        "safety_incharge": org.users["safety_incharge"].id,
        "plant_head": org.users["plant_head"].id,
    }
    assert [r.role for r in plan.stop_work] == ["hod", "safety_incharge", "plant_head"]


def test_ordered_closure(org):
    definition = dict(DEFAULT_PTW_POLICY, closure_policy={
        "mode": "ordered",
        "steps": [{"step": 1, "role": "supervisor"}, {"step": 2, "role": "safety_incharge"}],
    })
    plan = build_chain(parse_policy(definition), _scope(org, org.area), False, ApproverResolver())

    assert plan.closure_mode == "ordered"
    assert plan.closure_roles == ()
    assert [(s.role, s.status) for s in plan.closure_steps] == [("supervisor", None), ("safety_incharge", None)]
    assert plan.closure_steps[0].approver_id == org.users["supervisor"].id


def test_unresolved_roles_stay_unassigned(org):
    plan = build_chain(parse_policy(DEFAULT_PTW_POLICY), _scope(org, org.area_b), False, ApproverResolver())

    assert [s.approver_id for s in plan.approvals] == [None, None]
    assert [s.role for s in plan.unresolved_steps] == ["hod", "safety_incharge"]
    assert plan.approvals[0].status == "pending"


def test_materialize_writes_child_rows(org):
    definition = dict(DEFAULT_PTW_POLICY, closure_policy={"mode": "ordered", "steps": [{"step": 1, "role": "hod"}]})
    plan = build_chain(parse_policy(definition), _scope(org, org.area), False, ApproverResolver())
    permit = Permit(company_id=org.company.id, permit_number="X1", plant_id=org.plant.id,
                    work_description="test")

    materialize(permit, plan)

    assert permit.closure_mode == "ordered"
    assert [(s.flow, s.step) for s in permit.approvals] == [("approval", 1), ("approval", 2)]
    assert [(s.flow, s.step) for s in permit.closure_flow] == [("closure", 1)]
    assert permit.closure_approvers == []
    assert len(permit.stop_work_roles) == 3
