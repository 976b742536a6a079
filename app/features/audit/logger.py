"""
Audit logger for grant lifecycle transitions.

``record`` joins the caller's transaction: the entry and the mutation it
describes are committed together or not at all. A failed audit write
raises ``AuditWriteError`` and the caller rolls the mutation back.
"""
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuditWriteError
from app.features.audit.models import AuditAction, AuditEntry
from app.features.grants.models import Grant
from app.utils import get_logger


log = get_logger(__name__)


def entry_for(
    grant: Grant,
    action: AuditAction,
    actor_id: Optional[str],
    reason: Optional[str],
    timestamp: datetime,
    permission_code: Optional[str] = None,
) -> AuditEntry:
    """Build an audit entry carrying the grant metadata in effect now."""
    return AuditEntry(
        user_id=grant.user_id,
        permission_id=grant.permission_id,
        grant_id=grant.id,
        action=action,
        actor_id=actor_id,
        reason=reason,
        timestamp=timestamp,
        expires_at=grant.expires_at,
        details={
            "permission_code": permission_code,
            "granted_by": grant.granted_by,
            "can_delegate": grant.can_delegate,
            "delegation_limit": grant.delegation_limit,
            "delegated_from_id": grant.delegated_from_id,
            "conditions": grant.conditions,
        },
    )


class AuditLogger:
    """Append-only access to ``permission_audit_entries``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(self, entry: AuditEntry) -> AuditEntry:
        try:
            self.db.add(entry)
            await self.db.flush()
        except SQLAlchemyError as e:
            raise AuditWriteError(
                f"Failed to write audit entry for {entry.action.value}",
                {"user_id": entry.user_id, "permission_id": entry.permission_id},
            ) from e

        log.info(
            "Audit: action=%s user=%s permission=%s actor=%s grant=%s",
            entry.action.value, entry.user_id, entry.permission_id, entry.actor_id, entry.grant_id
        )
        return entry

    async def query_for_user(self, user_id: str) -> List[AuditEntry]:
        result = await self.db.execute(
            select(AuditEntry)
            .where(AuditEntry.user_id == user_id)
            .order_by(AuditEntry.timestamp, AuditEntry.id)
        )
        return list(result.scalars().all())

    async def query_for_permission(self, permission_id: str) -> List[AuditEntry]:
        result = await self.db.execute(
            select(AuditEntry)
            .where(AuditEntry.permission_id == permission_id)
            .order_by(AuditEntry.timestamp, AuditEntry.id)
        )
        return list(result.scalars().all())

    async def query(
        self,
        user_id: Optional[str] = None,
        permission_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[Sequence[AuditEntry], int]:
        """Filtered, newest-first page of entries plus the total match count."""
        filters = []
        if user_id:
            filters.append(AuditEntry.user_id == user_id)
        if permission_id:
            filters.append(AuditEntry.permission_id == permission_id)
        if actor_id:
            filters.append(AuditEntry.actor_id == actor_id)
        if action:
            filters.append(AuditEntry.action == action)

        stmt = select(AuditEntry)
        if filters:
            stmt = stmt.where(and_(*filters))

        count_stmt = select(func.count()).select_from(stmt.subquery())
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = stmt.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return result.scalars().all(), total
