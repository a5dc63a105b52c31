"""
Tests for ptw/services/helpers/scoped_queries.py

The helper is the only by-id loader for permits, so these pin down the
cross-company guarantee:
  1. ValueError when no scope (or only None values) is supplied
  2. ValueError for a scope column the model does not have
  3. NotFoundError when the id exists under another company
  4. The row when id and scope match
"""

import pytest

from ptw.core.exceptions import NotFoundError
from ptw.models.permit import Permit
from ptw.services.helpers.scoped_queries import get_scoped


class TestScopeRequired:
    def test_no_scope(self, flow):
        permit = flow.create()
        with pytest.raises(ValueError, match="Unscoped"):
            get_scoped(Permit, permit.id)

    def test_none_scope_counts_as_missing(self, flow):
        permit = flow.create()
        with pytest.raises(ValueError):
            get_scoped(Permit, permit.id, company_id=None)

    def test_unknown_column(self, flow, org):
        permit = flow.create()
        with pytest.raises(ValueError, match="tenant_id"):
            get_scoped(Permit, permit.id, company_id=org.company.id, tenant_id=1)


class TestIsolation:
    def test_same_company(self, flow, org):
        permit = flow.create()
        assert get_scoped(Permit, permit.id, company_id=org.company.id).id == permit.id

    def test_other_company_is_not_found(self, flow, make_org):
        permit = flow.create()
        other = make_org("globex")
        with pytest.raises(NotFoundError) as exc:
            get_scoped(Permit, permit.id, company_id=other.company.id)
        assert exc.value.resource == "Permit"

    def test_missing_id(self, org):
        with pytest.raises(NotFoundError):
            get_scoped(Permit, 9999, company_id=org.company.id)

    def test_extra_scope_column(self, flow, org):
        permit = flow.create()
        assert get_scoped(Permit, permit.id, company_id=org.company.id, plant_id=org.plant.id)
        with pytest.raises(NotFoundError):
            get_scoped(Permit, permit.id, company_id=org.company.id, plant_id=org.plant.id + 100)
