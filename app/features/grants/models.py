"""
Direct per-user permission grants.

A grant row is evidence: it is never deleted and never reactivated. Its
lifecycle is derived from its columns:

    PENDING  --approve-->  active  --revoke-->  revoked
        |                     |
        +--reject--> rejected +--expires_at passes--> expired (swept later)
"""
from datetime import datetime
import enum
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, JSON, Text, Boolean, Integer, Index, Enum as SQLEnum, text
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, TimestampMixin, UTCDateTime


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


class ApprovalState(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class GrantStatus(str, enum.Enum):
    """Derived lifecycle state, reported to API clients."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    REJECTED = "rejected"


# Rows that still occupy the (user, permission) slot: live grants, expired
# grants the sweeper has not retired yet, and pending requests
OPEN_GRANT_CONDITION = "revoked_at IS NULL AND swept_at IS NULL AND approval_state != 'REJECTED'"


class Grant(Base, TimestampMixin):
    """
    One permission assigned to one user outside their role defaults.

    ``conditions`` is stored and returned untouched; callers evaluate it in
    their own authorization context.
    """
    __tablename__ = "user_permissions"
    __table_args__ = (
        # At most one open row per (user, permission)
        Index(
            "uq_user_permissions_open",
            "user_id",
            "permission_id",
            unique=True,
            sqlite_where=text(OPEN_GRANT_CONDITION),
            postgresql_where=text(OPEN_GRANT_CONDITION),
        ),
        Index("ix_user_permissions_expiry", "expires_at", "swept_at"),
    )

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Provenance (granted_by null = system)
    granted_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True, index=True)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    grant_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Temporal validity (null = permanent)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Delegation
    can_delegate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delegation_limit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delegated_from_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("user_permissions.id"),
        nullable=True,
        index=True
    )

    # Opaque caller-evaluated predicate
    conditions: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Approval workflow
    approval_state: Mapped[ApprovalState] = mapped_column(
        SQLEnum(ApprovalState),
        default=ApprovalState.APPROVED,
        nullable=False,
        index=True
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Revocation record
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    revoked_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Set by the sweeper together with the expire audit entry
    swept_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return (
            self.approval_state == ApprovalState.APPROVED
            and self.revoked_at is None
            and not self.is_expired(now)
        )

    def status_at(self, now: datetime) -> GrantStatus:
        if self.approval_state == ApprovalState.REJECTED:
            return GrantStatus.REJECTED
        if self.revoked_at is not None:
            return GrantStatus.REVOKED
        if self.approval_state == ApprovalState.PENDING:
            return GrantStatus.PENDING
        if self.is_expired(now):
            return GrantStatus.EXPIRED
        return GrantStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<Grant(id={self.id}, user_id={self.user_id}, permission_id={self.permission_id}, "
            f"state={self.approval_state}, revoked={self.revoked_at is not None})>"
        )
