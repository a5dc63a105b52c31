"""
Module policy model — per-company workflow definitions.

The ``definition`` column holds the raw JSON document. It is never trusted
at call time: ``ptw.services.policy_store`` parses and validates it into
typed structures whenever it is loaded or saved.
"""

from datetime import datetime, timezone

from ptw.models import db
from ptw.models.base import CompanyScopedModel

POLICY_MODULES = frozenset({"ptw"})


class ModulePolicy(CompanyScopedModel):
    """Declarative workflow definition for one company and one module."""

    __tablename__ = "module_policies"
    __table_args__ = (
        db.UniqueConstraint("company_id", "module", name="uq_module_policy_company_module"),
    )

    id = db.Column(db.Integer, primary_key=True)
    module = db.Column(db.String(30), nullable=False, default="ptw")
    definition = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False, default=1,
                        comment="Bumped on every save")
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "module": self.module,
            "definition": self.definition or {},
            "version": self.version,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ModulePolicy company={self.company_id} module={self.module} v{self.version}>"
