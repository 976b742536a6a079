"""
Permission catalog models.

A permission is a named capability (``users.delete``) with risk metadata,
role defaults and two graphs over permissions:
- a parent/child tree (``parent_id`` / ``path``) used for grouping only
- a dependency/conflict graph enforced when permissions are granted
"""
import enum
from typing import List
from sqlalchemy import String, ForeignKey, Table, Column, JSON, Text, Boolean, Integer, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, TimestampMixin


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ============================================================================
# Association Tables for the dependency/conflict graph
# ============================================================================

# permission_id requires depends_on_id to be held first
permission_dependencies = Table(
    "permission_dependencies",
    Base.metadata,
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("depends_on_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

# permission_id cannot be held together with conflicts_with_id
permission_conflicts = Table(
    "permission_conflicts",
    Base.metadata,
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("conflicts_with_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


class Permission(Base, TimestampMixin):
    """
    Permission definition.

    ``code`` is the stable key referenced by grants and route guards.
    System permissions are seeded and cannot be deleted or renamed.
    """
    __tablename__ = "permissions"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Identity
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    module: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Organizational tree
    parent_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    # Ancestor ids from the root down, joined with "/"
    path: Mapped[str] = mapped_column(String(2000), default="", nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Risk metadata
    risk_level: Mapped[RiskLevel] = mapped_column(SQLEnum(RiskLevel), default=RiskLevel.LOW, nullable=False)
    requires_2fa: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Role defaults, stored as lists of Role values
    default_for_roles: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    excluded_from_roles: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    min_access_level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r}, risk={self.risk_level})>"
