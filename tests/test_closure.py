"""
Permit closure tests.

Covers:
    1. Any-of closure (default policy): single decision closes
    2. Closure rejection: back to active, payload archived
    3. Ordered closure: steps decided in order
    4. Authorisation and repeated decisions
"""

import pytest

from ptw.core.exceptions import (
    AlreadyDecidedError,
    InvalidStateError,
    UnauthorizedError,
    ValidationError,
)
from ptw.models.notification import Notification
from ptw.services import permit_service, policy_store
from ptw.services.expiry_scheduler import KIND_EXPIRE, timer_key
from ptw.services.policy_store import DEFAULT_PTW_POLICY
from ptw.services.scheduler_service import SchedulerService

CLOSURE_PAYLOAD = {
    "reason": "Work completed",
    "work_completed": True,
    "safety_checklist_completed": True,
    "evidence": ["photo-1.jpg"],
}


@pytest.fixture()
def pending_closure(flow, org):
    permit = flow.active()
    return permit_service.request_closure(permit.id, org.ident("worker"), CLOSURE_PAYLOAD, now=flow.now)


@pytest.fixture()
def ordered_policy(org):
    definition = dict(DEFAULT_PTW_POLICY, closure_policy={
        "mode": "ordered",
        "steps": [
            {"step": 1, "role": "supervisor", "label": "Supervisor sign-off"},
            {"step": 2, "role": "safety_incharge", "label": "Safety sign-off"},
        ],
    })
    return policy_store.save_policy(org.company.id, definition)


# ═════════════════════════════════════════════════════════════════════════
# ANY-OF
# ═════════════════════════════════════════════════════════════════════════


class TestAnyOfClosure:
    def test_request_closure(self, pending_closure, org):
        assert pending_closure.status == "pending_closure"
        assert pending_closure.closure["reason"] == "Work completed"
        assert pending_closure.closure["submitted_by"] == org.users["worker"].id
        notified = {n.recipient_id for n in Notification.query.filter_by(event_kind="permit_closure_requested")}
        assert notified == {org.users["hod"].id, org.users["safety_incharge"].id, org.users["plant_head"].id}

    def test_only_requester_requests_closure(self, flow, org):
        permit = flow.active()
        with pytest.raises(UnauthorizedError):
            permit_service.request_closure(permit.id, org.ident("hod"), CLOSURE_PAYLOAD)

    def test_closure_requires_active(self, flow, org):
        permit = flow.approved()
        with pytest.raises(InvalidStateError):
            permit_service.request_closure(permit.id, org.ident("worker"), CLOSURE_PAYLOAD)

    def test_payload_must_be_object(self, flow, org):
        permit = flow.active()
        with pytest.raises(ValidationError):
            permit_service.request_closure(permit.id, org.ident("worker"), ["done"])

    def test_any_snapshot_approver_closes(self, pending_closure, org, flow):
        permit = permit_service.decide_closure(
            pending_closure.id, org.ident("plant_head"), "approve", "area clean", now=flow.now,
        )
        assert permit.status == "closed"
        assert permit.closure_approved_by == org.users["plant_head"].id
        assert permit.closure["approval_comments"] == "area clean"
        assert SchedulerService.get_timer(timer_key(permit.id, KIND_EXPIRE)).status == "cancelled"

    def test_admin_may_close(self, pending_closure, org):
        permit = permit_service.decide_closure(pending_closure.id, org.ident("company_owner"), "approve")
        assert permit.status == "closed"

    def test_outsider_cannot_close(self, pending_closure, org):
        for key in ("worker", "supervisor"):
            with pytest.raises(UnauthorizedError):
                permit_service.decide_closure(pending_closure.id, org.ident(key), "approve")

    def test_second_decision_after_close(self, pending_closure, org):
        permit_service.decide_closure(pending_closure.id, org.ident("hod"), "approve")
        with pytest.raises(AlreadyDecidedError):
            permit_service.decide_closure(pending_closure.id, org.ident("safety_incharge"), "approve")

    def test_reject_reverts_and_archives(self, pending_closure, org):
        permit = permit_service.decide_closure(pending_closure.id, org.ident("hod"), "reject", "scaffold still up")

        assert permit.status == "active"
        assert permit.closure is None
        assert len(permit.closure_history) == 1
        archived = permit.closure_history[0]
        assert archived["reason"] == "Work completed"
        assert archived["rejected_by"] == org.users["hod"].id
        assert archived["rejection_comments"] == "scaffold still up"

        again = permit_service.request_closure(permit.id, org.ident("worker"), CLOSURE_PAYLOAD)
        assert again.status == "pending_closure"
        assert len(again.closure_history) == 1

    def test_decide_closure_when_active(self, flow, org):
        permit = flow.active()
        with pytest.raises(InvalidStateError):
            permit_service.decide_closure(permit.id, org.ident("hod"), "approve")


# ═════════════════════════════════════════════════════════════════════════
# ORDERED
# ═════════════════════════════════════════════════════════════════════════


class TestOrderedClosure:
    def test_ordered_chain_snapshotted(self, ordered_policy, flow, org):
        permit = flow.create()
        assert permit.closure_mode == "ordered"
        assert [(s.role, s.status) for s in permit.closure_flow] == [("supervisor", None), ("safety_incharge", None)]
        assert permit.closure_approvers == []

    def test_steps_in_order(self, ordered_policy, flow, org):
        permit = flow.active()
        permit = permit_service.request_closure(permit.id, org.ident("worker"), CLOSURE_PAYLOAD)
        assert [s.status for s in permit.closure_flow] == ["pending", None]

        with pytest.raises(UnauthorizedError):
            permit_service.decide_closure(permit.id, org.ident("safety_incharge"), "approve")

        permit = permit_service.decide_closure(permit.id, org.ident("supervisor"), "approve")
        assert permit.status == "pending_closure"
        assert [s.status for s in permit.closure_flow] == ["approved", "pending"]

        with pytest.raises(AlreadyDecidedError):
            permit_service.decide_closure(permit.id, org.ident("supervisor"), "approve")

        permit = permit_service.decide_closure(permit.id, org.ident("safety_incharge"), "approve")
        assert permit.status == "closed"
        assert permit.closure_approved_by == org.users["safety_incharge"].id

    def test_ordered_reject_resets_steps(self, ordered_policy, flow, org):
        permit = flow.active()
        permit_service.request_closure(permit.id, org.ident("worker"), CLOSURE_PAYLOAD)
        permit_service.decide_closure(permit.id, org.ident("supervisor"), "approve")
        permit = permit_service.decide_closure(permit.id, org.ident("safety_incharge"), "reject", "not clean")

        assert permit.status == "active"
        assert [s.status for s in permit.closure_flow] == [None, None]
        assert [s["status"] for s in permit.closure_history[0]["steps"]] == ["approved", "rejected"]

        permit = permit_service.request_closure(permit.id, org.ident("worker"), CLOSURE_PAYLOAD)
        assert [s.status for s in permit.closure_flow] == ["pending", None]

    def test_existing_permits_keep_their_mode(self, flow, org):
        permit = flow.create()
        policy_store.save_policy(org.company.id, dict(DEFAULT_PTW_POLICY, closure_policy={
            "mode": "ordered", "steps": [{"step": 1, "role": "hod"}],
        }))
        assert permit_service.get_permit(permit.id, org.ident("admin")).closure_mode == "anyOf"
