"""
Shared pytest fixtures for the PTW Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_org / org: company + plant + areas + one user per role
    - flow: drives a permit through the lifecycle at a fixed clock
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from ptw import create_app
from ptw.models import db as _db
from ptw.models.organization import Area, Company, Plant, User
from ptw.services import permit_service
from ptw.services.directory import DirectoryService

NOW = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)

_PERSONNEL_ROLES = (
    "hod",
    "safety_incharge",
    "supervisor",
    "plant_head",
    "admin",
    "company_owner",
    "worker",
    "contractor",
)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Organisation factory ─────────────────────────────────────────────────


def _user(company, plant, role, slug, suffix=""):
    user = User(
        company_id=company.id,
        plant_id=plant.id,
        email=f"{role}{suffix}@{slug}.example",
        full_name=f"{role.replace('_', ' ').title()}{suffix}",
        role=role,
        is_active=True,
    )
    _db.session.add(user)
    return user


@pytest.fixture()
def make_org():
    """Factory: build a company with one plant, two areas and its personnel.

    ``area`` has hod / safety_incharge / supervisor assigned; ``area_b`` has
    nobody, so area-scoped roles do not resolve there.
    """

    def _make(slug="acme"):
        company = Company(name=slug.title(), slug=slug, settings={})
        _db.session.add(company)
        _db.session.flush()

        plant = Plant(company_id=company.id, name=f"{slug.title()} North", code="NORTH")
        _db.session.add(plant)
        _db.session.flush()

        users = {role: _user(company, plant, role, slug) for role in _PERSONNEL_ROLES}
        users["worker2"] = _user(company, plant, "worker", slug, suffix="2")
        _db.session.flush()

        area = Area(
            company_id=company.id,
            plant_id=plant.id,
            name="Boiler House",
            code="BH",
            hod_id=users["hod"].id,
            safety_incharge_id=users["safety_incharge"].id,
            supervisor_id=users["supervisor"].id,
        )
        area_b = Area(company_id=company.id, plant_id=plant.id, name="Tank Farm", code="TF")
        _db.session.add_all([area, area_b])
        _db.session.commit()

        directory = DirectoryService()

        def ident(key):
            return directory.load_identity(users[key].id)

        return SimpleNamespace(
            company=company,
            plant=plant,
            area=area,
            area_b=area_b,
            users=users,
            ident=ident,
        )

    return _make


@pytest.fixture()
def org(make_org):
    return make_org()


# ── Lifecycle driver ─────────────────────────────────────────────────────


class PermitFlow:
    """Moves a fresh permit to a given status through the real transitions."""

    now = NOW

    def __init__(self, org):
        self.org = org

    def payload(self, **overrides):
        data = {
            "plant_id": self.org.plant.id,
            "area_id": self.org.area.id,
            "types": ["cold_work"],
            "work_description": "Replace gasket on feed pump P-101",
            "location": {"building": "B2", "equipment": "P-101"},
            "hazards": ["pressurised line"],
            "ppe": ["gloves", "goggles"],
        }
        data.update(overrides)
        return data

    def create(self, requester="worker", **overrides):
        return permit_service.create_permit(
            self.org.company.id, self.payload(**overrides), self.org.ident(requester), now=self.now,
        )

    def submitted(self, requester="worker", **overrides):
        permit = self.create(requester, **overrides)
        return permit_service.submit(permit.id, self.org.ident(requester), now=self.now)

    def approved(self, requester="worker", **overrides):
        permit = self.submitted(requester, **overrides)
        directory = DirectoryService()
        while permit.status == "submitted":
            pending = permit.pending_step()
            permit = permit_service.decide(
                permit.id, directory.load_identity(pending.approver_id), "approve", "ok", now=self.now,
            )
        return permit

    def active(self, requester="worker", **overrides):
        permit = self.approved(requester, **overrides)
        return permit_service.activate(permit.id, self.org.ident(requester), now=self.now)


@pytest.fixture()
def flow(org):
    return PermitFlow(org)
