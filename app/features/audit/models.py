"""
Audit log for administrative changes to the grant model.
"""
from typing import Any, Dict
from sqlalchemy import String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class AuditLog(Base, TimestampMixin):
    """
    One administrative action and the dependent rows it touched.

    details holds the counts reported by cascades, for example
    {"tables_removed": 3, "fields_removed": 41, "profiles_unassigned": 2}.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor (identity provider id, null for system actions such as seeding)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor={self.actor_id}, action={self.action}, resource={self.resource_type})>"
