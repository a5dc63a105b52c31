"""
Company-scoped lookups.

Permit ids are guessable integers, so loading one by primary key alone
would let a caller of company A read or transition a permit of company B.
Every by-id lookup in the engine goes through ``get_scoped`` instead of
``db.session.get``; a permit of another company is reported exactly like a
missing one.

    permit = get_scoped(Permit, permit_id, company_id=identity.company_id)
"""

import logging

from sqlalchemy import select

from ptw.core.exceptions import NotFoundError
from ptw.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, **scope):
    """Fetch ``model`` by id, filtered by every ``column=value`` in ``scope``.

    Raises:
        ValueError: no scope given, or a scope column the model does not have.
            Both are programming errors and must never degrade into an
            unscoped lookup.
        NotFoundError: no row with that id inside the scope.
    """
    scope = {k: v for k, v in scope.items() if v is not None}
    if not scope:
        raise ValueError(f"Unscoped lookup of {model.__name__} id={pk} refused")

    unknown = sorted(col for col in scope if not hasattr(model, col))
    if unknown:
        raise ValueError(f"{model.__name__} has no scope column(s) {unknown}")

    stmt = select(model).where(model.id == pk)
    for col, value in scope.items():
        stmt = stmt.where(getattr(model, col) == value)

    row = db.session.execute(stmt).scalar_one_or_none()
    if row is None:
        logger.debug("%s id=%s not found in scope %s", model.__name__, pk, scope)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return row
