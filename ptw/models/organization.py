"""
Organisation models — companies, plants, areas, users.

These tables are the directory the permit engine reads from when it
resolves approvers. The engine never writes them; administrative CRUD
lives outside this service.
"""

from datetime import datetime, timezone

from ptw.models import db
from ptw.models.base import CompanyScopedModel


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = frozenset({
    "platform_owner",
    "company_owner",
    "admin",
    "plant_head",
    "safety_incharge",
    "hod",
    "supervisor",
    "contractor",
    "worker",
    "user",
})

# Escape-hatch roles: may stop any active permit and repair approver assignments.
ADMIN_ROLES = frozenset({"platform_owner", "company_owner", "admin"})


# ═══════════════════════════════════════════════════════════════
# 1. COMPANIES
# ═══════════════════════════════════════════════════════════════
class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    settings = db.Column(db.JSON, default=dict, comment="Numbering prefixes and other per-tenant knobs")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    plants = db.relationship("Plant", back_populates="company", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. PLANTS
# ═══════════════════════════════════════════════════════════════
class Plant(CompanyScopedModel):
    __tablename__ = "plants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(30), nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_plant_company_code"),
    )

    company = db.relationship("Company", back_populates="plants")
    areas = db.relationship("Area", back_populates="plant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
        }


# ═══════════════════════════════════════════════════════════════
# 3. AREAS
# ═══════════════════════════════════════════════════════════════
class Area(CompanyScopedModel):
    """A plant area with its designated personnel.

    hod / safety_incharge / supervisor are the area-scoped approver slots
    consulted by the approver resolver.
    """

    __tablename__ = "areas"

    id = db.Column(db.Integer, primary_key=True)
    plant_id = db.Column(
        db.Integer, db.ForeignKey("plants.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20), nullable=False)
    hod_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    safety_incharge_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    supervisor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    plant = db.relationship("Plant", back_populates="areas")

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "plant_id": self.plant_id,
            "name": self.name,
            "code": self.code,
            "hod_id": self.hod_id,
            "safety_incharge_id": self.safety_incharge_id,
            "supervisor_id": self.supervisor_id,
            "is_active": self.is_active,
        }


# ═══════════════════════════════════════════════════════════════
# 4. USERS
# ═══════════════════════════════════════════════════════════════
class User(CompanyScopedModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    plant_id = db.Column(db.Integer, db.ForeignKey("plants.id", ondelete="SET NULL"), nullable=True, index=True)
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(30), nullable=False, default="worker")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Same email may exist in different companies
    __table_args__ = (
        db.UniqueConstraint("company_id", "email", name="uq_user_company_email"),
        db.Index("ix_users_company_role", "company_id", "role"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "plant_id": self.plant_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email} [{self.role}]>"
