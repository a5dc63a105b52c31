"""
Module policy store tests.

Covers:
    - default policy when nothing is stored
    - typed parsing of chains, closure variants, stop roles, caps
    - field-level validation errors
    - save → version bump, normalised definition
"""

import pytest

from ptw.core.exceptions import ValidationError
from ptw.models.policy import ModulePolicy
from ptw.services import policy_store
from ptw.services.policy_store import AnyOfClosure, OrderedClosure, parse_policy


def _definition(**overrides):
    data = {
        "approval_steps": [
            {"step": 1, "role": "hod", "label": "HOD"},
            {"step": 2, "role": "safety_incharge", "label": "Safety"},
        ],
        "closure_policy": {"mode": "anyOf", "roles": ["hod"]},
    }
    data.update(overrides)
    return data


class TestDefaults:
    def test_default_policy_when_nothing_stored(self, org):
        policy = policy_store.get_policy(org.company.id)
        assert policy.version == 0
        assert [s.role for s in policy.approval_steps] == ["hod", "safety_incharge"]
        assert [s.role for s in policy.high_risk_approval_steps] == ["plant_head", "hod", "safety_incharge"]
        assert isinstance(policy.closure, AnyOfClosure)
        assert policy.max_extension_hours("hod") == 12
        assert policy.max_extension_hours("worker") is None

    def test_timing_defaults_come_from_config(self, app, org):
        policy = policy_store.get_policy(org.company.id)
        assert policy.default_expiry_hours == app.config["PTW_DEFAULT_EXPIRY_HOURS"]
        assert policy.reminder_lead_hours == app.config["PTW_REMINDER_LEAD_HOURS"]

    def test_unknown_module_rejected(self, org):
        with pytest.raises(ValidationError):
            policy_store.get_policy(org.company.id, module="loto")


class TestParsing:
    def test_high_risk_chain_falls_back_to_normal_chain(self):
        policy = parse_policy(_definition())
        assert policy.high_risk_approval_steps == policy.approval_steps

    def test_steps_sorted_by_number(self):
        policy = parse_policy(_definition(approval_steps=[
            {"step": 2, "role": "safety_incharge"},
            {"step": 1, "role": "hod"},
        ]))
        assert [s.step for s in policy.approval_steps] == [1, 2]
        assert policy.approval_steps[0].label == "hod"

    def test_ordered_closure(self):
        policy = parse_policy(_definition(closure_policy={
            "mode": "ordered",
            "steps": [{"step": 1, "role": "supervisor"}, {"step": 2, "role": "hod"}],
        }))
        assert isinstance(policy.closure, OrderedClosure)
        assert policy.closure.mode == "ordered"
        assert [s.role for s in policy.closure.steps] == ["supervisor", "hod"]

    def test_stop_roles_accept_strings_and_objects(self):
        policy = parse_policy(_definition(stop_work_roles=["hod", {"role": "plant_head", "label": "PH stop"}]))
        assert [(r.role, r.label) for r in policy.stop_work_roles] == [("hod", "hod"), ("plant_head", "PH stop")]

    def test_round_trip_through_definition(self):
        policy = parse_policy(_definition(extension_authorizations={"hod": 6}))
        again = parse_policy(policy.to_definition())
        assert again == policy


class TestValidation:
    def test_unknown_role_in_chain(self):
        with pytest.raises(ValidationError) as exc:
            parse_policy(_definition(approval_steps=[{"step": 1, "role": "wizard"}]))
        assert "approval_steps[0].role" in exc.value.details

    def test_gap_in_step_numbers(self):
        with pytest.raises(ValidationError) as exc:
            parse_policy(_definition(approval_steps=[{"step": 1, "role": "hod"}, {"step": 3, "role": "hod"}]))
        assert "approval_steps" in exc.value.details

    def test_empty_chain(self):
        with pytest.raises(ValidationError) as exc:
            parse_policy(_definition(approval_steps=[]))
        assert "approval_steps" in exc.value.details

    def test_bad_closure_mode(self):
        with pytest.raises(ValidationError) as exc:
            parse_policy(_definition(closure_policy={"mode": "majority", "roles": ["hod"]}))
        assert "closure_policy.mode" in exc.value.details

    @pytest.mark.parametrize("cap", [0, -4, "12", True])
    def test_extension_cap_must_be_positive_number(self, cap):
        with pytest.raises(ValidationError) as exc:
            parse_policy(_definition(extension_authorizations={"hod": cap}))
        assert "extension_authorizations.hod" in exc.value.details

    def test_all_errors_reported_together(self):
        with pytest.raises(ValidationError) as exc:
            parse_policy({"approval_steps": "hod", "closure_policy": None, "default_expiry_hours": -1})
        assert {"approval_steps", "closure_policy", "default_expiry_hours"} <= set(exc.value.details)


class TestSave:
    def test_save_creates_then_bumps_version(self, org):
        first = policy_store.save_policy(org.company.id, _definition(), updated_by=org.users["admin"].id)
        assert first.version == 1
        second = policy_store.save_policy(org.company.id, _definition(extension_authorizations={"hod": 4}))
        assert second.id == first.id
        assert second.version == 2
        assert ModulePolicy.query.count() == 1

        policy = policy_store.get_policy(org.company.id)
        assert policy.version == 2
        assert policy.max_extension_hours("hod") == 4

    def test_invalid_definition_not_stored(self, org):
        with pytest.raises(ValidationError):
            policy_store.save_policy(org.company.id, _definition(approval_steps=[{"role": "nobody"}]))
        assert policy_store.get_policy_record(org.company.id) is None

    def test_policies_are_per_company(self, make_org):
        acme = make_org("acme")
        globex = make_org("globex")
        policy_store.save_policy(acme.company.id, _definition(approval_steps=[{"step": 1, "role": "supervisor"}]))
        assert [s.role for s in policy_store.get_policy(acme.company.id).approval_steps] == ["supervisor"]
        assert policy_store.get_policy(globex.company.id).version == 0
