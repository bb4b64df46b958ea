"""
Permission set, table access and field access models.

A permission set grants create/read/update/delete on whole tables
(TableAccess) and view/edit on individual columns of those tables
(FieldAccess). Permission sets reach users either through a profile or
directly; both assignment edges live here because deleting a permission
set must remove them in the same transaction.
"""
from datetime import datetime
from sqlalchemy import (
    String, Integer, Boolean, ForeignKey, Table, Column, DateTime,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


SOURCE_PROFILE = "profile"
SOURCE_DIRECT = "direct"
SOURCE_TYPES = (SOURCE_PROFILE, SOURCE_DIRECT)


# ============================================================================
# Assignment edges
# ============================================================================

profile_permission_sets = Table(
    "profile_permission_sets",
    Base.metadata,
    Column("profile_id", String(26), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_set_id", String(26), ForeignKey("permission_sets.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)

# user_id is the identity provider's opaque id, not a local key.
# The same permission set may appear twice for a user, once per source type.
user_permission_sets = Table(
    "user_permission_sets",
    Base.metadata,
    Column("user_id", String(255), primary_key=True),
    Column("permission_set_id", String(26), ForeignKey("permission_sets.id", ondelete="CASCADE"), primary_key=True),
    Column("source_type", String(16), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
    CheckConstraint(f"source_type IN ('{SOURCE_PROFILE}', '{SOURCE_DIRECT}')", name="ck_user_permission_sets_source_type"),
)


# ============================================================================
# Core Models
# ============================================================================

class PermissionSet(Base, TimestampMixin):
    """
    Named, reusable bundle of table and field grants.

    table_count is a cached count of TableAccess rows, recomputed by the
    grant store after every attach and detach.
    """
    __tablename__ = "permission_sets"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    table_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<PermissionSet(id={self.id}, name={self.name!r}, tables={self.table_count})>"


class TableAccess(Base, TimestampMixin):
    """CRUD flags one permission set grants on one physical table."""
    __tablename__ = "permission_set_table_access"
    __table_args__ = (
        UniqueConstraint("permission_set_id", "table_name", name="uq_table_access_set_table"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    permission_set_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permission_sets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    table_name: Mapped[str] = mapped_column(String(128), nullable=False)

    can_create: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_update: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Read-only view; the grant store deletes field rows with explicit statements
    fields: Mapped[list["FieldAccess"]] = relationship(
        "FieldAccess",
        order_by="FieldAccess.field_name",
        viewonly=True,
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<TableAccess(id={self.id}, set={self.permission_set_id}, table={self.table_name!r}, "
            f"crud={int(self.can_create)}{int(self.can_read)}{int(self.can_update)}{int(self.can_delete)})>"
        )


class FieldAccess(Base, TimestampMixin):
    """View/edit flags for one column of a granted table."""
    __tablename__ = "permission_set_field_access"
    __table_args__ = (
        UniqueConstraint("table_access_id", "field_name", name="uq_field_access_table_field"),
        CheckConstraint("NOT can_edit OR can_view", name="ck_field_access_edit_requires_view"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    table_access_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permission_set_table_access.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    field_name: Mapped[str] = mapped_column(String(128), nullable=False)
    can_view: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<FieldAccess(id={self.id}, field={self.field_name!r}, view={self.can_view}, edit={self.can_edit})>"
