"""
PTW Engine
Visibility filter — which permits an identity may list or read.

Read path only. The state machine re-checks authorisation on every
transition independently of this filter.

    company_owner / admin / platform_owner   whole company
    plant_head                               own plant (nothing without a plant)
    hod / safety_incharge / supervisor       involvement: approver of any step,
                                             closure approver, requester, or
                                             designated personnel of the area
    worker / contractor / user               own requests only
    anything else                            nothing
"""

from sqlalchemy import or_, select

from ptw.models.organization import ADMIN_ROLES, Area
from ptw.models.permit import Permit, PermitApprovalStep

APPROVER_CLASS_ROLES = frozenset({"hod", "safety_incharge", "supervisor"})
PLANT_CLASS_ROLES = frozenset({"plant_head"})
REQUESTER_CLASS_ROLES = frozenset({"worker", "contractor", "user"})


def permit_visibility_filter(identity):
    """Return a SQLAlchemy predicate over ``Permit``, or None for deny-all."""
    in_company = Permit.company_id == identity.company_id
    role = identity.role
    uid = identity.user_id

    if role in ADMIN_ROLES:
        return in_company

    if role in PLANT_CLASS_ROLES:
        if identity.plant_id is None:
            return None
        return in_company & (Permit.plant_id == identity.plant_id)

    if role in APPROVER_CLASS_ROLES:
        step_permits = select(PermitApprovalStep.permit_id).where(PermitApprovalStep.approver_id == uid)
        own_areas = select(Area.id).where(
            Area.company_id == identity.company_id,
            or_(Area.hod_id == uid, Area.safety_incharge_id == uid, Area.supervisor_id == uid),
        )
        return in_company & or_(
            Permit.requested_by == uid,
            Permit.closure_approved_by == uid,
            Permit.id.in_(step_permits),
            Permit.area_id.in_(own_areas),
        )

    if role in REQUESTER_CLASS_ROLES:
        return in_company & (Permit.requested_by == uid)

    return None


def can_view(identity, permit) -> bool:
    """Same rule as ``permit_visibility_filter`` for an already loaded permit."""
    if permit.company_id != identity.company_id:
        return False
    role = identity.role
    uid = identity.user_id

    if role in ADMIN_ROLES:
        return True
    if role in PLANT_CLASS_ROLES:
        return identity.plant_id is not None and permit.plant_id == identity.plant_id
    if role in APPROVER_CLASS_ROLES:
        if uid in (permit.requested_by, permit.closure_approved_by):
            return True
        if any(s.approver_id == uid for s in permit.steps):
            return True
        if permit.area_id is not None:
            area = Area.query_for_company(identity.company_id).filter_by(id=permit.area_id).first()
            if area is not None and uid in (area.hod_id, area.safety_incharge_id, area.supervisor_id):
                return True
        return False
    if role in REQUESTER_CLASS_ROLES:
        return permit.requested_by == uid
    return False
