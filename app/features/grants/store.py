"""
Grant store: the only writer of ``user_permissions``.

Every mutation and its audit entry are committed in one transaction. Events
for the notification layer are dispatched after the commit.

Usage:
    store = GrantStore(db, notifier=LoggingNotifier())
    grant = await store.grant(user.id, permission.id, actor_id=admin.id, reason="on-call")
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    ApprovalError,
    ConflictError,
    DelegationDeniedError,
    InactivePermissionError,
    MissingDependencyError,
    NotFoundError,
    ValidationError,
)
from app.core.notifications import GrantEvent, Notifier, dispatch
from app.features.audit.logger import AuditLogger, entry_for
from app.features.audit.models import AuditAction
from app.features.grants.models import ApprovalState, Grant
from app.features.grants.resolver import AllPermissions, EffectivePermissionResolver
from app.features.grants.risk_gate import RiskGate
from app.features.permissions.catalog import CatalogSnapshot, PermissionCatalog, PermissionDefinition
from app.features.users.models import User
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

REQUEST_EXPIRED = "request expired"


def _open_filter():
    return and_(
        Grant.revoked_at.is_(None),
        Grant.swept_at.is_(None),
        Grant.approval_state != ApprovalState.REJECTED,
    )


def _active_filter(now: datetime):
    return and_(
        Grant.approval_state == ApprovalState.APPROVED,
        Grant.revoked_at.is_(None),
        or_(Grant.expires_at.is_(None), Grant.expires_at > now),
    )


class GrantStore:

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[PermissionCatalog] = None,
        audit: Optional[AuditLogger] = None,
        gate: Optional[RiskGate] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.catalog = catalog or PermissionCatalog(db)
        self.audit = audit or AuditLogger(db)
        self.gate = gate or RiskGate()
        self.notifier = notifier
        self.resolver = EffectivePermissionResolver(self.catalog, self, self.gate)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def grant(
        self,
        user_id: str,
        permission_id: str,
        actor_id: Optional[str],
        reason: Optional[str],
        expires_at: Optional[datetime] = None,
        can_delegate: bool = False,
        delegation_limit: int = 0,
        conditions: Optional[Dict[str, Any]] = None,
        delegated_from_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Grant:
        """
        Grant a permission directly to a user.

        Returns the new grant, or the existing one if the pair already has an
        active grant or a pending request. Approval-gated permissions produce
        a PENDING row that does not count as active until approved.
        """
        now = as_utc(now) or utcnow()
        expires_at = as_utc(expires_at)
        try:
            grant, events = await self._grant(
                user_id, permission_id, actor_id, reason, expires_at,
                can_delegate, delegation_limit, conditions, delegated_from_id, now,
            )
            await self.db.commit()
        except IntegrityError:
            # Lost the race on the open-grant index; the winner is the result
            await self.db.rollback()
            existing = await self._open_grant(user_id, permission_id)
            if existing is None:
                raise
            log.info("Concurrent grant of %s to %s resolved to %s", permission_id, user_id, existing.id)
            return existing
        except Exception:
            await self.db.rollback()
            raise

        await dispatch(self.notifier, events)
        return grant

    async def revoke(
        self,
        user_id: str,
        permission_id: str,
        actor_id: Optional[str],
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Grant]:
        """
        Revoke the active grant (or cancel the pending request) for a pair.

        Returns ``None`` without writing anything when there is nothing to
        revoke. Grants that already expired are left for the sweeper.
        """
        now = as_utc(now) or utcnow()
        try:
            grant = await self._open_grant(user_id, permission_id)
            if grant is None or (grant.approval_state == ApprovalState.APPROVED and grant.is_expired(now)):
                log.debug("Revoke of %s from %s: nothing to revoke", permission_id, user_id)
                return None

            grant.revoked_at = now
            grant.revoked_by = actor_id
            grant.revoke_reason = reason
            await self.db.flush()

            code = await self._permission_code(permission_id)
            await self.audit.record(entry_for(grant, AuditAction.REVOKE, actor_id, reason, now, code))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log.info("Revoked %s from user %s (grant %s) by %s", code, user_id, grant.id, actor_id)
        await dispatch(self.notifier, [self._event("revoke", grant, actor_id, now, code)])
        return grant

    async def approve(
        self,
        grant_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Grant:
        """Activate a pending request. The approver must not be the requester."""
        now = as_utc(now) or utcnow()
        try:
            grant = await self._pending_grant(grant_id)
            self.gate.authorize_approval(grant.granted_by, actor_id)
            if grant.is_expired(now):
                raise ApprovalError("Grant request has expired", {"grant_id": grant_id})

            # The world may have changed since the request was filed
            user = await self.get_user(grant.user_id)
            snapshot = await self.catalog.snapshot()
            permission = self._active_permission(snapshot, grant.permission_id)
            self.gate.authorize_grant(permission, user)
            await self._check_graph(snapshot, permission, user)

            grant.approval_state = ApprovalState.APPROVED
            grant.reviewed_by = actor_id
            grant.reviewed_at = now
            grant.review_reason = reason
            grant.granted_at = now
            await self.db.flush()

            await self.audit.record(entry_for(grant, AuditAction.GRANT, actor_id, reason, now, permission.code))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log.info("Approved grant %s of %s to user %s by %s", grant.id, permission.code, grant.user_id, actor_id)
        await dispatch(self.notifier, [self._event("grant", grant, actor_id, now, permission.code)])
        return grant

    async def reject(
        self,
        grant_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Grant:
        """Close a pending request without activating it."""
        now = as_utc(now) or utcnow()
        try:
            grant = await self._pending_grant(grant_id)
            grant.approval_state = ApprovalState.REJECTED
            grant.reviewed_by = actor_id
            grant.reviewed_at = now
            grant.review_reason = reason
            await self.db.flush()

            code = await self._permission_code(grant.permission_id)
            await self.audit.record(entry_for(grant, AuditAction.REJECT, actor_id, reason, now, code))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log.info("Rejected grant request %s of %s for user %s by %s", grant.id, code, grant.user_id, actor_id)
        await dispatch(self.notifier, [self._event("reject", grant, actor_id, now, code)])
        return grant

    async def delegate(
        self,
        grantor_id: str,
        user_id: str,
        permission_id: str,
        reason: Optional[str],
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Grant:
        """
        Pass on a delegable grant held by ``grantor_id``.

        The delegated grant never outlives its source, cannot be delegated
        further and counts against the source's ``delegation_limit`` while
        it is active or pending.
        """
        now = as_utc(now) or utcnow()
        expires_at = as_utc(expires_at)

        if grantor_id == user_id:
            raise DelegationDeniedError("Cannot delegate a permission to yourself")

        grantor = await self.get_user(grantor_id)
        if not grantor.is_active:
            raise DelegationDeniedError("Inactive users cannot delegate", {"grantor_id": grantor_id})

        source = (await self.db.execute(
            select(Grant).where(
                and_(
                    Grant.user_id == grantor_id,
                    Grant.permission_id == permission_id,
                    _active_filter(now),
                )
            )
        )).scalars().first()
        if source is None or not source.can_delegate:
            raise DelegationDeniedError(
                "Grantor holds no delegable grant of this permission",
                {"grantor_id": grantor_id, "permission_id": permission_id},
            )

        delegated = (await self.db.execute(
            select(func.count(Grant.id)).where(
                and_(
                    Grant.delegated_from_id == source.id,
                    Grant.approval_state != ApprovalState.REJECTED,
                    Grant.revoked_at.is_(None),
                    or_(Grant.expires_at.is_(None), Grant.expires_at > now),
                )
            )
        )).scalar() or 0
        if delegated >= source.delegation_limit:
            raise DelegationDeniedError(
                "Delegation limit reached",
                {"grant_id": source.id, "delegation_limit": source.delegation_limit},
            )

        if source.expires_at is not None and (expires_at is None or expires_at > source.expires_at):
            expires_at = source.expires_at

        return await self.grant(
            user_id,
            permission_id,
            actor_id=grantor_id,
            reason=reason,
            expires_at=expires_at,
            conditions=source.conditions,
            delegated_from_id=source.id,
            now=now,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_active_for_user(self, user_id: str, now: Optional[datetime] = None) -> List[Grant]:
        now = as_utc(now) or utcnow()
        result = await self.db.execute(
            select(Grant)
            .where(and_(Grant.user_id == user_id, _active_filter(now)))
            .order_by(Grant.granted_at, Grant.id)
        )
        return list(result.scalars().all())

    async def list_expired(self, now: Optional[datetime] = None, include_swept: bool = False) -> List[Grant]:
        """Approved, unrevoked grants whose ``expires_at`` is at or before ``now``."""
        now = as_utc(now) or utcnow()
        filters = [
            Grant.approval_state == ApprovalState.APPROVED,
            Grant.revoked_at.is_(None),
            Grant.expires_at.is_not(None),
            Grant.expires_at <= now,
        ]
        if not include_swept:
            filters.append(Grant.swept_at.is_(None))
        result = await self.db.execute(
            select(Grant).where(and_(*filters)).order_by(Grant.expires_at, Grant.id)
        )
        return list(result.scalars().all())

    async def list_for_user(
        self,
        user_id: str,
        include_inactive: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Grant]:
        """Grant history for a user, newest first."""
        stmt = select(Grant).where(Grant.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(_active_filter(as_utc(now) or utcnow()))
        result = await self.db.execute(stmt.order_by(Grant.granted_at.desc(), Grant.id.desc()))
        return list(result.scalars().all())

    async def list_pending(self, now: Optional[datetime] = None) -> List[Grant]:
        """Requests still awaiting review. Expired requests cannot be approved and are left out."""
        now = as_utc(now) or utcnow()
        result = await self.db.execute(
            select(Grant)
            .where(and_(
                Grant.approval_state == ApprovalState.PENDING,
                _open_filter(),
                or_(Grant.expires_at.is_(None), Grant.expires_at > now),
            ))
            .order_by(Grant.granted_at, Grant.id)
        )
        return list(result.scalars().all())

    async def get(self, grant_id: str) -> Grant:
        grant = await self.db.get(Grant, grant_id)
        if grant is None:
            raise NotFoundError(f"Grant not found: {grant_id}", {"grant_id": grant_id})
        return grant

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _grant(
        self,
        user_id: str,
        permission_id: str,
        actor_id: Optional[str],
        reason: Optional[str],
        expires_at: Optional[datetime],
        can_delegate: bool,
        delegation_limit: int,
        conditions: Optional[Dict[str, Any]],
        delegated_from_id: Optional[str],
        now: datetime,
    ) -> Tuple[Grant, List[GrantEvent]]:
        events: List[GrantEvent] = []

        user = await self.get_user(user_id)
        snapshot = await self.catalog.snapshot()
        permission = self._active_permission(snapshot, permission_id)

        existing = await self._open_grant(user_id, permission_id)
        if existing is not None:
            if not existing.is_expired(now):
                log.debug("Grant of %s to %s already open as %s", permission.code, user_id, existing.id)
                return existing, events
            events.append(await self._retire_expired(existing, now, permission.code))

        self.gate.authorize_grant(permission, user)
        await self._check_graph(snapshot, permission, user)

        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future", {"expires_at": expires_at.isoformat()})
        if delegation_limit < 0:
            raise ValidationError("delegation_limit cannot be negative")

        pending = self.gate.requires_approval(permission)
        grant = Grant(
            user_id=user_id,
            permission_id=permission_id,
            granted_by=actor_id,
            granted_at=now,
            grant_reason=reason,
            expires_at=expires_at,
            can_delegate=can_delegate,
            delegation_limit=delegation_limit if can_delegate else 0,
            delegated_from_id=delegated_from_id,
            conditions=conditions,
            approval_state=ApprovalState.PENDING if pending else ApprovalState.APPROVED,
        )
        self.db.add(grant)
        await self.db.flush()

        action = AuditAction.REQUEST if pending else AuditAction.GRANT
        await self.audit.record(entry_for(grant, action, actor_id, reason, now, permission.code))
        events.append(self._event(action.value, grant, actor_id, now, permission.code))

        if pending:
            log.info("Grant of %s to user %s queued for approval (%s)", permission.code, user_id, grant.id)
        else:
            log.info("Granted %s to user %s by %s (%s)", permission.code, user_id, actor_id, grant.id)
        return grant, events

    async def _retire_expired(self, grant: Grant, now: datetime, code: str) -> GrantEvent:
        """Close an expired open row so the slot frees up before a re-grant."""
        if grant.approval_state == ApprovalState.PENDING:
            # Never active, so there is nothing to expire
            grant.approval_state = ApprovalState.REJECTED
            grant.reviewed_at = now
            grant.review_reason = REQUEST_EXPIRED
            action = AuditAction.REJECT
            reason = REQUEST_EXPIRED
        else:
            grant.swept_at = now
            action = AuditAction.EXPIRE
            reason = "expired"
        await self.db.flush()
        await self.audit.record(entry_for(grant, action, None, reason, now, code))
        return self._event(action.value, grant, None, now, code)

    async def _check_graph(self, snapshot: CatalogSnapshot, permission: PermissionDefinition, user: User) -> None:
        """Dependencies must be held and conflicts must not be, measured on the current effective set."""
        effective = await self.resolver.resolve(user)
        if isinstance(effective, AllPermissions):
            return

        missing = sorted(
            snapshot.by_id[dep_id].code if dep_id in snapshot.by_id else dep_id
            for dep_id in permission.dependencies
            if dep_id not in snapshot.by_id or snapshot.by_id[dep_id].code not in effective
        )
        if missing:
            log.warning("Grant of %s to %s denied: missing %s", permission.code, user.id, ", ".join(missing))
            raise MissingDependencyError(
                f"Permission {permission.code} requires: {', '.join(missing)}",
                {"code": permission.code, "missing": missing},
            )

        # Conflict edges count in both directions
        conflict_ids: Set[str] = set(permission.conflicts)
        conflict_ids.update(p.id for p in snapshot.by_id.values() if permission.id in p.conflicts)
        conflicting = sorted(
            snapshot.by_id[other_id].code
            for other_id in conflict_ids
            if other_id in snapshot.by_id and snapshot.by_id[other_id].code in effective
        )
        if conflicting:
            log.warning("Grant of %s to %s denied: conflicts with %s", permission.code, user.id, ", ".join(conflicting))
            raise ConflictError(
                f"Permission {permission.code} conflicts with: {', '.join(conflicting)}",
                {"code": permission.code, "conflicts": conflicting},
            )

    @staticmethod
    def _active_permission(snapshot: CatalogSnapshot, permission_id: str) -> PermissionDefinition:
        permission = snapshot.by_id.get(permission_id)
        if permission is None:
            raise NotFoundError(f"Permission not found: {permission_id}", {"permission_id": permission_id})
        if not permission.is_active:
            raise InactivePermissionError(f"Permission {permission.code} is not active", {"code": permission.code})
        return permission

    async def get_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}", {"user_id": user_id})
        return user

    async def _open_grant(self, user_id: str, permission_id: str) -> Optional[Grant]:
        result = await self.db.execute(
            select(Grant).where(
                and_(Grant.user_id == user_id, Grant.permission_id == permission_id, _open_filter())
            )
        )
        return result.scalars().first()

    async def _pending_grant(self, grant_id: str) -> Grant:
        grant = await self.get(grant_id)
        if grant.approval_state != ApprovalState.PENDING or grant.revoked_at is not None or grant.swept_at is not None:
            raise ApprovalError(
                f"Grant {grant_id} is not awaiting approval",
                {"grant_id": grant_id, "approval_state": grant.approval_state.value},
            )
        return grant

    async def _permission_code(self, permission_id: str) -> Optional[str]:
        definition = (await self.catalog.snapshot()).by_id.get(permission_id)
        return definition.code if definition else None

    @staticmethod
    def _event(
        action: str,
        grant: Grant,
        actor_id: Optional[str],
        now: datetime,
        code: Optional[str],
    ) -> GrantEvent:
        return GrantEvent(
            action=action,
            user_id=grant.user_id,
            permission_id=grant.permission_id,
            grant_id=grant.id,
            actor_id=actor_id,
            timestamp=now,
            details={"permission_code": code, "expires_at": grant.expires_at},
        )
