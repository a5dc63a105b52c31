"""
PTW Engine
Module Policy Store.

Holds, per company, the declarative permit workflow: ordered approval
chains (normal and high-risk), the closure policy, the extension
authorisation table and the stop-work roles.

The stored JSON document is parsed into immutable, typed structures every
time it is loaded or saved. A malformed definition is rejected with a
``ValidationError`` carrying field-level details; nothing downstream ever
inspects the raw JSON.

Definition document (all keys optional except the chains):

    {
      "approval_steps":           [{"step": 1, "role": "hod", "label": "...", "required": true}, ...],
      "high_risk_approval_steps": [...],
      "closure_policy":           {"mode": "anyOf", "roles": ["hod", ...], "label": "..."}
                                  | {"mode": "ordered", "steps": [...]},
      "extension_authorizations": {"hod": 12, "safety_incharge": 24},
      "stop_work_roles":          [{"role": "hod", "label": "..."}, "plant_head", ...],
      "default_expiry_hours":     8,
      "reminder_lead_hours":      24
    }
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import ClassVar

from flask import current_app

from ptw.core.exceptions import ValidationError
from ptw.models import db
from ptw.models.organization import USER_ROLES
from ptw.models.policy import POLICY_MODULES, ModulePolicy

logger = logging.getLogger(__name__)


DEFAULT_PTW_POLICY = {
    "approval_steps": [
        {"step": 1, "role": "hod", "label": "HOD Approval"},
        {"step": 2, "role": "safety_incharge", "label": "Safety Approval"},
    ],
    "high_risk_approval_steps": [
        {"step": 1, "role": "plant_head", "label": "Plant Head Initial Approval"},
        {"step": 2, "role": "hod", "label": "HOD Approval"},
        {"step": 3, "role": "safety_incharge", "label": "Safety Approval"},
    ],
    "closure_policy": {
        "mode": "anyOf",
        "roles": ["hod", "safety_incharge", "plant_head"],
        "label": "Closure Approval",
    },
    "extension_authorizations": {"hod": 12, "safety_incharge": 24},
    "stop_work_roles": [
        {"role": "hod", "label": "HOD Stop Work"},
        {"role": "safety_incharge", "label": "Safety Stop Work"},
        {"role": "plant_head", "label": "Plant Head Stop Work"},
    ],
}


# ═════════════════════════════════════════════════════════════════════════════
# Typed policy structures
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PolicyStep:
    step: int
    role: str
    label: str = ""
    required: bool = True

    def to_dict(self) -> dict:
        return {"step": self.step, "role": self.role, "label": self.label, "required": self.required}


@dataclass(frozen=True)
class OrderedClosure:
    """Closure decided step by step, like the approval chain."""

    steps: tuple[PolicyStep, ...]
    mode: ClassVar[str] = "ordered"

    def to_dict(self) -> dict:
        return {"mode": self.mode, "steps": [s.to_dict() for s in self.steps]}


@dataclass(frozen=True)
class AnyOfClosure:
    """Closure decided once by any holder of one of ``roles``."""

    roles: tuple[str, ...]
    label: str = "Closure Approval"
    mode: ClassVar[str] = "anyOf"

    def to_dict(self) -> dict:
        return {"mode": self.mode, "roles": list(self.roles), "label": self.label}


@dataclass(frozen=True)
class StopWorkRole:
    role: str
    label: str = ""

    def to_dict(self) -> dict:
        return {"role": self.role, "label": self.label}


@dataclass(frozen=True)
class PermitPolicy:
    approval_steps: tuple[PolicyStep, ...]
    high_risk_approval_steps: tuple[PolicyStep, ...]
    closure: OrderedClosure | AnyOfClosure
    extension_authorizations: dict[str, float] = field(default_factory=dict)
    stop_work_roles: tuple[StopWorkRole, ...] = ()
    default_expiry_hours: float = 8
    reminder_lead_hours: float = 24
    version: int = 0

    def chain_for(self, is_high_risk: bool) -> tuple[PolicyStep, ...]:
        return self.high_risk_approval_steps if is_high_risk else self.approval_steps

    def max_extension_hours(self, role: str) -> float | None:
        """Cap for ``role``, or None when the role may not extend at all."""
        return self.extension_authorizations.get(role)

    def to_definition(self) -> dict:
        return {
            "approval_steps": [s.to_dict() for s in self.approval_steps],
            "high_risk_approval_steps": [s.to_dict() for s in self.high_risk_approval_steps],
            "closure_policy": self.closure.to_dict(),
            "extension_authorizations": dict(self.extension_authorizations),
            "stop_work_roles": [r.to_dict() for r in self.stop_work_roles],
            "default_expiry_hours": self.default_expiry_hours,
            "reminder_lead_hours": self.reminder_lead_hours,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Parsing & validation
# ═════════════════════════════════════════════════════════════════════════════


def _positive_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _parse_steps(raw, field_name: str, errors: dict) -> tuple[PolicyStep, ...]:
    if not isinstance(raw, list) or not raw:
        errors[field_name] = "must be a non-empty list of {step, role, label, required}"
        return ()

    steps = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            errors[f"{field_name}[{i}]"] = "must be an object"
            continue
        role = entry.get("role")
        if role not in USER_ROLES:
            errors[f"{field_name}[{i}].role"] = f"unknown role {role!r}"
            continue
        step = entry.get("step", i + 1)
        if not isinstance(step, int) or isinstance(step, bool):
            errors[f"{field_name}[{i}].step"] = "must be an integer"
            continue
        steps.append(PolicyStep(
            step=step,
            role=role,
            label=str(entry.get("label") or role),
            required=bool(entry.get("required", True)),
        ))

    steps.sort(key=lambda s: s.step)
    numbers = [s.step for s in steps]
    if numbers and numbers != list(range(1, len(numbers) + 1)):
        errors[field_name] = f"step numbers must be contiguous from 1, got {numbers}"
    return tuple(steps)


def _parse_closure(raw, errors: dict) -> OrderedClosure | AnyOfClosure:
    if not isinstance(raw, dict):
        errors["closure_policy"] = "must be an object with a mode of 'ordered' or 'anyOf'"
        return AnyOfClosure(roles=())

    mode = raw.get("mode")
    if mode == "ordered":
        return OrderedClosure(steps=_parse_steps(raw.get("steps"), "closure_policy.steps", errors))
    if mode == "anyOf":
        roles = raw.get("roles")
        if not isinstance(roles, list) or not roles:
            errors["closure_policy.roles"] = "must be a non-empty list of roles"
            return AnyOfClosure(roles=())
        unknown = [r for r in roles if r not in USER_ROLES]
        if unknown:
            errors["closure_policy.roles"] = f"unknown roles {unknown}"
        return AnyOfClosure(
            roles=tuple(r for r in roles if r in USER_ROLES),
            label=str(raw.get("label") or "Closure Approval"),
        )

    errors["closure_policy.mode"] = f"must be 'ordered' or 'anyOf', got {mode!r}"
    return AnyOfClosure(roles=())


def parse_policy(definition: dict, *, defaults: dict | None = None, version: int = 0) -> PermitPolicy:
    """Validate a raw definition document and build a ``PermitPolicy``.

    Args:
        definition: Raw JSON document as stored in ``module_policies``.
        defaults: Fallbacks for ``default_expiry_hours`` / ``reminder_lead_hours``.
        version: Stored row version, carried for information.

    Raises:
        ValidationError: with one ``details`` entry per offending field.
    """
    defaults = defaults or {}
    errors: dict[str, str] = {}

    if not isinstance(definition, dict):
        raise ValidationError("Policy definition must be an object", details={"definition": "not an object"})

    approval_steps = _parse_steps(definition.get("approval_steps"), "approval_steps", errors)
    high_risk_steps = _parse_steps(
        definition.get("high_risk_approval_steps", definition.get("approval_steps")),
        "high_risk_approval_steps",
        errors,
    )
    closure = _parse_closure(definition.get("closure_policy"), errors)

    raw_ext = definition.get("extension_authorizations") or {}
    extension_authorizations: dict[str, float] = {}
    if not isinstance(raw_ext, dict):
        errors["extension_authorizations"] = "must be a mapping of role → max hours"
    else:
        for role, max_hours in raw_ext.items():
            if role not in USER_ROLES:
                errors[f"extension_authorizations.{role}"] = "unknown role"
            elif not _positive_number(max_hours):
                errors[f"extension_authorizations.{role}"] = "max hours must be a positive number"
            else:
                extension_authorizations[role] = float(max_hours)

    stop_work_roles = []
    for i, entry in enumerate(definition.get("stop_work_roles") or []):
        if isinstance(entry, str):
            entry = {"role": entry}
        role = entry.get("role") if isinstance(entry, dict) else None
        if role not in USER_ROLES:
            errors[f"stop_work_roles[{i}]"] = f"unknown role {role!r}"
            continue
        stop_work_roles.append(StopWorkRole(role=role, label=str(entry.get("label") or role)))

    timing = {}
    for key, fallback in (("default_expiry_hours", 8), ("reminder_lead_hours", 24)):
        value = definition.get(key, defaults.get(key, fallback))
        if not _positive_number(value):
            errors[key] = "must be a positive number"
            value = fallback
        timing[key] = float(value)

    if errors:
        raise ValidationError("Invalid PTW policy definition", details=errors)

    return PermitPolicy(
        approval_steps=approval_steps,
        high_risk_approval_steps=high_risk_steps,
        closure=closure,
        extension_authorizations=extension_authorizations,
        stop_work_roles=tuple(stop_work_roles),
        default_expiry_hours=timing["default_expiry_hours"],
        reminder_lead_hours=timing["reminder_lead_hours"],
        version=version,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Store
# ═════════════════════════════════════════════════════════════════════════════


def _config_defaults() -> dict:
    return {
        "default_expiry_hours": current_app.config.get("PTW_DEFAULT_EXPIRY_HOURS", 8),
        "reminder_lead_hours": current_app.config.get("PTW_REMINDER_LEAD_HOURS", 24),
    }


def _check_module(module: str) -> None:
    if module not in POLICY_MODULES:
        raise ValidationError(f"Unknown module {module!r}", details={"module": f"must be one of {sorted(POLICY_MODULES)}"})


def get_policy_record(company_id: int, module: str = "ptw") -> ModulePolicy | None:
    return ModulePolicy.query_for_company(company_id).filter_by(module=module).first()


def get_policy(company_id: int, module: str = "ptw") -> PermitPolicy:
    """Return the effective, validated policy for a company.

    Companies without a stored definition run on ``DEFAULT_PTW_POLICY``.
    """
    _check_module(module)
    record = get_policy_record(company_id, module)
    if record is None:
        return parse_policy(DEFAULT_PTW_POLICY, defaults=_config_defaults())
    return parse_policy(record.definition, defaults=_config_defaults(), version=record.version)


def save_policy(company_id: int, definition: dict, *, module: str = "ptw",
                updated_by: int | None = None) -> ModulePolicy:
    """Validate and persist a policy definition (create or replace).

    Permits already created keep their materialised chains; only permits
    created afterwards see the new definition.
    """
    _check_module(module)
    parsed = parse_policy(definition, defaults=_config_defaults())

    record = get_policy_record(company_id, module)
    normalised = parsed.to_definition()
    if record is None:
        record = ModulePolicy(
            company_id=company_id,
            module=module,
            definition=normalised,
            version=1,
            updated_by=updated_by,
        )
        db.session.add(record)
    else:
        record.definition = copy.deepcopy(normalised)
        record.version = (record.version or 0) + 1
        record.updated_by = updated_by
    db.session.commit()

    logger.info(
        "Module policy saved company=%s module=%s version=%s",
        company_id, module, record.version,
        extra={"company_id": company_id, "event_type": "policy_saved"},
    )
    return record
