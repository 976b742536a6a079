"""
Audit trail for grant lifecycle transitions.

Entries are append-only: the ORM refuses to update or delete them. Retention
and purging are handled outside this service.
"""
from datetime import datetime
import enum
from typing import Any, Dict
from sqlalchemy import String, JSON, Text, Enum as SQLEnum, event
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, UTCDateTime


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


class AuditAction(str, enum.Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    EXPIRE = "expire"
    REQUEST = "request"
    REJECT = "reject"


class AuditEntry(Base):
    """
    One grant, revoke, expiry, approval request or rejection.

    ``expires_at`` and ``details`` capture the grant metadata in effect when
    the transition happened, so the entry stays meaningful after the grant
    row changes.
    """
    __tablename__ = "permission_audit_entries"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Subject (no foreign keys: entries outlive users and permissions)
    user_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    permission_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    grant_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction), nullable=False, index=True)

    # Actor (null for system-driven expiry)
    actor_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)

    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, action={self.action}, user_id={self.user_id}, permission_id={self.permission_id})>"


@event.listens_for(AuditEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise RuntimeError(f"Audit entries are append-only (update attempted on {target.id})")


@event.listens_for(AuditEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise RuntimeError(f"Audit entries are append-only (delete attempted on {target.id})")
