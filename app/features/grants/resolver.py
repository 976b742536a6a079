"""
Effective permission resolution.

This is the single place that knows the admin bypass. Everything that asks
"can this user do X" goes through ``EffectivePermissionResolver``.

Resolution order:
1. users that are not ACTIVE hold nothing
2. ADMIN holds everything, without risk gating
3. role defaults: active permissions listing the role, not excluding it,
   with ``min_access_level`` at or below the user's access level
4. direct grants: active grants on active permissions, regardless of
   access level
5. the effective set is (3) | (4); grants only ever add
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Union

from app.features.grants.models import Grant
from app.features.grants.risk_gate import AccessDecision, RiskGate
from app.features.permissions.catalog import PermissionCatalog
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


class AllPermissions:
    """Effective set of an ADMIN: contains every code."""

    def __contains__(self, code: object) -> bool:
        return True

    def __repr__(self) -> str:
        return "ALL_PERMISSIONS"


ALL_PERMISSIONS = AllPermissions()

EffectiveSet = Union[FrozenSet[str], AllPermissions]


class ActiveGrantSource(Protocol):
    async def list_active_for_user(self, user_id: str) -> List[Grant]: ...


@dataclass(frozen=True)
class EffectivePermission:
    code: str
    permission_id: str
    source: str  # "admin", "role" or "direct"
    grant_id: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    conditions: Optional[Dict[str, Any]] = None


class EffectivePermissionResolver:

    def __init__(self, catalog: PermissionCatalog, grants: ActiveGrantSource, gate: Optional[RiskGate] = None):
        self.catalog = catalog
        self.grants = grants
        self.gate = gate or RiskGate()

    async def resolve(self, user: User) -> EffectiveSet:
        if not user.is_active:
            return frozenset()
        if user.is_admin:
            return ALL_PERMISSIONS
        return frozenset(p.code for p in await self._resolve_entries(user))

    async def has_permission(self, user: User, code: str) -> bool:
        return code in await self.resolve(user)

    async def has_any(self, user: User, codes: Iterable[str]) -> bool:
        effective = await self.resolve(user)
        return any(code in effective for code in codes)

    async def has_all(self, user: User, codes: Iterable[str]) -> bool:
        effective = await self.resolve(user)
        return all(code in effective for code in codes)

    async def explain(self, user: User) -> List[EffectivePermission]:
        """Effective permissions with where each one comes from."""
        if not user.is_active:
            return []
        if user.is_admin:
            return [
                EffectivePermission(code=p.code, permission_id=p.id, source="admin")
                for p in await self.catalog.list_active()
            ]
        return sorted(await self._resolve_entries(user), key=lambda p: p.code)

    async def check(self, user: User, code: str) -> AccessDecision:
        """Assignment plus risk gating for one permission."""
        if user.is_active and user.is_admin:
            return AccessDecision(code=code, held=True, allowed=True, reason="Administrator")

        snapshot = await self.catalog.snapshot()
        permission = snapshot.by_code.get(code)
        if permission is None:
            return AccessDecision(code=code, held=False, allowed=False, reason="Unknown permission")

        held = code in await self.resolve(user)
        decision = self.gate.authorize_check(permission, user, held)
        if not decision.allowed:
            log.debug("Access check denied: user=%s code=%s reason=%s", user.id, code, decision.reason)
        return decision

    async def _resolve_entries(self, user: User) -> List[EffectivePermission]:
        snapshot = await self.catalog.snapshot()

        entries: Dict[str, EffectivePermission] = {}
        for permission in snapshot.by_code.values():
            if permission.is_role_default(user.role, user.access_level):
                entries[permission.code] = EffectivePermission(
                    code=permission.code, permission_id=permission.id, source="role"
                )

        # Direct grants override the role entry so callers see grant metadata
        for grant in await self.grants.list_active_for_user(user.id):
            permission = snapshot.by_id.get(grant.permission_id)
            if permission is None or not permission.is_active:
                continue
            entries[permission.code] = EffectivePermission(
                code=permission.code,
                permission_id=permission.id,
                source="direct",
                grant_id=grant.id,
                granted_by=grant.granted_by,
                granted_at=grant.granted_at,
                expires_at=grant.expires_at,
                conditions=grant.conditions,
            )

        return list(entries.values())
