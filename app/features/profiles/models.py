"""
Profile model and the user-to-profile edge.
"""
from datetime import datetime
from sqlalchemy import String, Text, ForeignKey, Table, Column, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


# A user has at most one active profile, hence user_id alone is the key.
user_profiles = Table(
    "user_profiles",
    Base.metadata,
    Column("user_id", String(255), primary_key=True),
    Column("profile_id", String(26), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)


class Profile(Base, TimestampMixin):
    """
    Bundle of permission sets assigned to many users at once.

    Examples: Manager, Viewer, Billing Clerk
    """
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, name={self.name!r})>"
