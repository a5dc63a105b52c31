"""
PTW Engine
Directory service & Approver Resolver.

The directory is the read-only view over companies / plants / areas /
users the engine consults to turn an abstract role into a person:

    - area-scoped roles   (hod, safety_incharge, supervisor) → the area's
      designated personnel column
    - plant-scoped roles  (plant_head) → the active holder within the plant
    - company-scoped roles (company_owner, admin) → the active holder within
      the company

An unconfigured role resolves to ``None``. That is never an error: the chain
builder records the step as pending-but-unassigned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ptw.models import db
from ptw.models.organization import ADMIN_ROLES, Area, User

logger = logging.getLogger(__name__)

AREA_ROLE_COLUMNS = {
    "hod": "hod_id",
    "safety_incharge": "safety_incharge_id",
    "supervisor": "supervisor_id",
}
PLANT_SCOPED_ROLES = frozenset({"plant_head"})
COMPANY_SCOPED_ROLES = frozenset({"company_owner", "admin"})


@dataclass(frozen=True)
class ResolutionScope:
    company_id: int
    plant_id: int | None = None
    area_id: int | None = None


@dataclass(frozen=True)
class Identity:
    """The caller of a permit operation, as loaded from the directory."""

    user_id: int
    role: str
    company_id: int
    plant_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class DirectoryService:
    """Role → user lookups over the organisation tables."""

    def find_by_role(self, role: str, scope: ResolutionScope) -> User | None:
        if role in AREA_ROLE_COLUMNS:
            return self._find_area_personnel(role, scope)
        if role in PLANT_SCOPED_ROLES:
            if scope.plant_id is None:
                return None
            return self._find_single_holder(role, scope.company_id, plant_id=scope.plant_id)
        if role in COMPANY_SCOPED_ROLES:
            return self._find_single_holder(role, scope.company_id)
        logger.debug("Role %s has no directory scope; not resolvable", role)
        return None

    def _find_area_personnel(self, role: str, scope: ResolutionScope) -> User | None:
        if scope.area_id is None:
            return None
        area = Area.query_for_company(scope.company_id).filter_by(id=scope.area_id).first()
        if area is None:
            return None
        user_id = getattr(area, AREA_ROLE_COLUMNS[role])
        if user_id is None:
            return None
        user = User.query_for_company(scope.company_id).filter_by(id=user_id).first()
        if user is None or not user.is_active:
            return None
        return user

    def _find_single_holder(self, role: str, company_id: int, plant_id: int | None = None) -> User | None:
        q = User.query_for_company(company_id).filter_by(role=role, is_active=True)
        if plant_id is not None:
            q = q.filter_by(plant_id=plant_id)
        holders = q.order_by(User.id.asc()).all()
        if not holders:
            return None
        if len(holders) > 1:
            logger.warning(
                "Role %s has %d active holders in company=%s plant=%s; using user %s",
                role, len(holders), company_id, plant_id, holders[0].id,
                extra={"company_id": company_id, "event_type": "ambiguous_role_holder"},
            )
        return holders[0]

    def load_identity(self, user_id: int) -> Identity | None:
        """Build an ``Identity`` for an active user, or None."""
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return Identity(
            user_id=user.id,
            role=user.role,
            company_id=user.company_id,
            plant_id=user.plant_id,
        )

    def is_active_member(self, user_id: int, company_id: int) -> bool:
        user = User.query_for_company(company_id).filter_by(id=user_id).first()
        return user is not None and bool(user.is_active)


class ApproverResolver:
    """Resolve role references to user ids, memoised per instance.

    One resolver is created per chain build, so every role is looked up at
    most once per scope and the whole chain sees a consistent snapshot.
    """

    def __init__(self, directory: DirectoryService | None = None):
        self.directory = directory or DirectoryService()
        self._cache: dict[tuple[str, ResolutionScope], int | None] = {}

    def resolve(self, role: str, scope: ResolutionScope) -> int | None:
        key = (role, scope)
        if key not in self._cache:
            user = self.directory.find_by_role(role, scope)
            self._cache[key] = user.id if user is not None else None
            if user is None:
                logger.info(
                    "No holder configured for role %s (company=%s plant=%s area=%s)",
                    role, scope.company_id, scope.plant_id, scope.area_id,
                    extra={"company_id": scope.company_id, "event_type": "approver_unresolved"},
                )
        return self._cache[key]
