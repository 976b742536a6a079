"""
Permission catalog: cached read access and validated administrative writes.

Reads go through a process-wide snapshot cache. Snapshots are immutable
``PermissionDefinition`` records, safe to share between sessions and
requests. A snapshot is reused for at most ``CATALOG_CACHE_TTL_SECONDS``
and dropped immediately by any write made through this module, so a write
in another process becomes visible here within the TTL.
"""
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from sqlalchemy import select, delete, func, insert, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.errors import InvalidGraphError, NotFoundError, ProtectedPermissionError
from app.features.permissions.models import (
    Permission,
    RiskLevel,
    permission_dependencies,
    permission_conflicts,
)
from app.features.permissions.schemas import PermissionCreate, PermissionUpdate
from app.features.users.models import Role, User, UserStatus
from app.utils import get_logger, utcnow


log = get_logger(__name__)


@dataclass(frozen=True)
class PermissionDefinition:
    """Immutable view of a catalog entry."""
    id: str
    code: str
    name: str
    description: Optional[str]
    category: str
    module: Optional[str]
    parent_id: Optional[str]
    path: str
    level: int
    risk_level: RiskLevel
    requires_2fa: bool
    requires_approval: bool
    default_for_roles: FrozenSet[str]
    excluded_from_roles: FrozenSet[str]
    min_access_level: int
    dependencies: FrozenSet[str]
    conflicts: FrozenSet[str]
    is_active: bool
    is_system: bool

    def is_role_default(self, role: Role, access_level: int) -> bool:
        """True when holders of ``role`` get this permission without a grant."""
        role_value = Role(role).value
        return (
            self.is_active
            and role_value in self.default_for_roles
            and role_value not in self.excluded_from_roles
            and self.min_access_level <= access_level
        )


@dataclass
class PermissionNode:
    permission: PermissionDefinition
    children: List["PermissionNode"] = field(default_factory=list)


@dataclass(frozen=True)
class PermissionUsage:
    direct_users: int
    role_users: int
    total_users: int


class CatalogSnapshot:
    """All permission definitions loaded at one point in time."""

    def __init__(self, definitions: Iterable[PermissionDefinition]):
        self.by_id: Dict[str, PermissionDefinition] = {}
        self.by_code: Dict[str, PermissionDefinition] = {}
        self.children: Dict[Optional[str], List[PermissionDefinition]] = defaultdict(list)
        for definition in sorted(definitions, key=lambda d: d.code):
            self.by_id[definition.id] = definition
            self.by_code[definition.code] = definition
            self.children[definition.parent_id].append(definition)


async def load_snapshot(db: AsyncSession) -> CatalogSnapshot:
    """Read the whole catalog, including both edge tables."""
    permissions = (await db.execute(select(Permission))).scalars().all()

    dependencies: Dict[str, Set[str]] = defaultdict(set)
    for row in (await db.execute(select(permission_dependencies))).all():
        dependencies[row.permission_id].add(row.depends_on_id)

    conflicts: Dict[str, Set[str]] = defaultdict(set)
    for row in (await db.execute(select(permission_conflicts))).all():
        conflicts[row.permission_id].add(row.conflicts_with_id)

    return CatalogSnapshot(
        PermissionDefinition(
            id=p.id,
            code=p.code,
            name=p.name,
            description=p.description,
            category=p.category,
            module=p.module,
            parent_id=p.parent_id,
            path=p.path or "",
            level=p.level or 0,
            risk_level=p.risk_level,
            requires_2fa=p.requires_2fa,
            requires_approval=p.requires_approval,
            default_for_roles=frozenset(p.default_for_roles or ()),
            excluded_from_roles=frozenset(p.excluded_from_roles or ()),
            min_access_level=p.min_access_level,
            dependencies=frozenset(dependencies.get(p.id, ())),
            conflicts=frozenset(conflicts.get(p.id, ())),
            is_active=p.is_active,
            is_system=p.is_system,
        )
        for p in permissions
    )


class CatalogCache:
    """Process-wide snapshot holder with a bounded staleness window."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._snapshot: Optional[CatalogSnapshot] = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._snapshot = None

    async def snapshot(self, db: AsyncSession) -> CatalogSnapshot:
        now = time.monotonic()
        if self._snapshot is None or now - self._loaded_at > self.ttl_seconds:
            self._snapshot = await load_snapshot(db)
            self._loaded_at = now
            log.debug("Catalog snapshot loaded: %d permissions", len(self._snapshot.by_id))
        return self._snapshot


catalog_cache = CatalogCache(config.CATALOG_CACHE_TTL_SECONDS)


def _child_path(parent: PermissionDefinition | Permission) -> str:
    return f"{parent.path}/{parent.id}" if parent.path else parent.id


class PermissionCatalog:
    """
    Catalog access bound to one session.

    Usage:
        catalog = PermissionCatalog(db)
        permission = await catalog.get("users.delete")
    """

    def __init__(self, db: AsyncSession, cache: CatalogCache = catalog_cache):
        self.db = db
        self.cache = cache

    async def snapshot(self) -> CatalogSnapshot:
        return await self.cache.snapshot(self.db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, code: str) -> PermissionDefinition:
        definition = (await self.snapshot()).by_code.get(code)
        if definition is None:
            raise NotFoundError(f"Permission not found: {code}", {"code": code})
        return definition

    async def get_by_id(self, permission_id: str) -> PermissionDefinition:
        definition = (await self.snapshot()).by_id.get(permission_id)
        if definition is None:
            raise NotFoundError(f"Permission not found: {permission_id}", {"permission_id": permission_id})
        return definition

    async def list_all(self) -> List[PermissionDefinition]:
        return list((await self.snapshot()).by_code.values())

    async def list_active(self) -> List[PermissionDefinition]:
        return [p for p in await self.list_all() if p.is_active]

    async def children(self, permission_id: str) -> List[PermissionDefinition]:
        snapshot = await self.snapshot()
        if permission_id not in snapshot.by_id:
            raise NotFoundError(f"Permission not found: {permission_id}", {"permission_id": permission_id})
        return list(snapshot.children.get(permission_id, []))

    async def dependencies_of(self, permission_id: str) -> FrozenSet[str]:
        return (await self.get_by_id(permission_id)).dependencies

    async def conflicts_of(self, permission_id: str) -> FrozenSet[str]:
        return (await self.get_by_id(permission_id)).conflicts

    async def grouped_by_category(self) -> Dict[str, List[PermissionDefinition]]:
        grouped: Dict[str, List[PermissionDefinition]] = defaultdict(list)
        for definition in sorted(await self.list_all(), key=lambda d: (d.category, d.name)):
            grouped[definition.category].append(definition)
        return dict(grouped)

    async def tree(self) -> List[PermissionNode]:
        snapshot = await self.snapshot()

        def build(definition: PermissionDefinition) -> PermissionNode:
            return PermissionNode(
                permission=definition,
                children=[build(child) for child in snapshot.children.get(definition.id, [])],
            )

        return [build(root) for root in snapshot.children.get(None, [])]

    async def usage(self, permission_id: str) -> PermissionUsage:
        """Count users holding the permission directly and through role defaults."""
        from app.features.grants.models import Grant, ApprovalState

        definition = await self.get_by_id(permission_id)
        now = utcnow()
        direct_users = (await self.db.execute(
            select(func.count(func.distinct(Grant.user_id))).where(
                and_(
                    Grant.permission_id == permission_id,
                    Grant.approval_state == ApprovalState.APPROVED,
                    Grant.revoked_at.is_(None),
                    or_(Grant.expires_at.is_(None), Grant.expires_at > now),
                )
            )
        )).scalar() or 0

        roles = [Role(r) for r in definition.default_for_roles - definition.excluded_from_roles]
        role_users = 0
        if roles and definition.is_active:
            role_users = (await self.db.execute(
                select(func.count(User.id)).where(
                    and_(
                        User.role.in_(roles),
                        User.status == UserStatus.ACTIVE,
                        User.access_level >= definition.min_access_level,
                    )
                )
            )).scalar() or 0

        return PermissionUsage(
            direct_users=direct_users,
            role_users=role_users,
            total_users=direct_users + role_users,
        )

    # ------------------------------------------------------------------
    # Administrative writes
    # ------------------------------------------------------------------

    async def create(self, data: PermissionCreate, is_system: bool = False) -> PermissionDefinition:
        snapshot = await load_snapshot(self.db)
        if data.code in snapshot.by_code:
            raise InvalidGraphError(f"Permission code already exists: {data.code}", {"code": data.code})

        dependency_ids = self._resolve_codes(snapshot, data.dependencies, "dependencies")
        conflict_ids = self._resolve_codes(snapshot, data.conflicts, "conflicts")
        self._check_edges(None, dependency_ids, conflict_ids)

        parent = self._resolve_parent(snapshot, data.parent_code)
        permission = Permission(
            code=data.code,
            name=data.name,
            description=data.description,
            category=data.category,
            module=data.module,
            parent_id=parent.id if parent else None,
            path=_child_path(parent) if parent else "",
            level=parent.level + 1 if parent else 0,
            risk_level=data.risk_level,
            requires_2fa=data.requires_2fa,
            requires_approval=data.requires_approval,
            default_for_roles=[Role(r).value for r in data.default_for_roles],
            excluded_from_roles=[Role(r).value for r in data.excluded_from_roles],
            min_access_level=data.min_access_level,
            is_active=data.is_active,
            is_system=is_system,
        )
        self.db.add(permission)
        await self.db.flush()

        await self._replace_edges(permission.id, dependency_ids, conflict_ids)
        await self.db.commit()
        self.cache.invalidate()

        log.info("Catalog: created permission %s", permission.code)
        return await self.get_by_id(permission.id)

    async def update(self, permission_id: str, data: PermissionUpdate) -> PermissionDefinition:
        snapshot = await load_snapshot(self.db)
        current = snapshot.by_id.get(permission_id)
        if current is None:
            raise NotFoundError(f"Permission not found: {permission_id}", {"permission_id": permission_id})

        permission = await self.db.get(Permission, permission_id)
        # Explicit nulls only clear nullable columns and the parent
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in ("description", "module", "parent_code")
        }

        dependency_ids = set(current.dependencies)
        conflict_ids = set(current.conflicts)
        if "dependencies" in changes:
            dependency_ids = self._resolve_codes(snapshot, changes["dependencies"] or [], "dependencies")
        if "conflicts" in changes:
            conflict_ids = self._resolve_codes(snapshot, changes["conflicts"] or [], "conflicts")
        self._check_edges(permission_id, dependency_ids, conflict_ids)
        self._check_reverse_conflicts(snapshot, permission_id, dependency_ids, conflict_ids)
        self._check_dependency_cycles(snapshot, permission_id, dependency_ids)

        parent = None
        if "parent_code" in changes:
            parent = self._resolve_parent(snapshot, changes["parent_code"])
            self._check_parent_cycle(snapshot, permission_id, parent)

        if "code" in changes and changes["code"] != current.code:
            if current.is_system:
                raise ProtectedPermissionError("System permissions cannot be renamed", {"code": current.code})
            if await self._is_referenced(permission_id):
                raise ProtectedPermissionError(
                    "Permission code cannot change once it has been granted", {"code": current.code}
                )
            if changes["code"] in snapshot.by_code:
                raise InvalidGraphError(f"Permission code already exists: {changes['code']}")
            permission.code = changes["code"]

        if "name" in changes and changes["name"] != current.name:
            if current.is_system:
                raise ProtectedPermissionError("System permissions cannot be renamed", {"code": current.code})
            permission.name = changes["name"]

        for key in (
            "description", "category", "module", "risk_level", "requires_2fa",
            "requires_approval", "min_access_level", "is_active",
        ):
            if key in changes:
                setattr(permission, key, changes[key])
        for key in ("default_for_roles", "excluded_from_roles"):
            if key in changes:
                setattr(permission, key, [Role(r).value for r in changes[key] or []])

        if "parent_code" in changes:
            if (parent.id if parent else None) != current.parent_id:
                permission.parent_id = parent.id if parent else None
                await self.db.flush()
                await self._rebuild_paths()

        if "dependencies" in changes or "conflicts" in changes:
            await self._replace_edges(permission_id, dependency_ids, conflict_ids)

        await self.db.commit()
        self.cache.invalidate()

        log.info("Catalog: updated permission %s (%s)", permission.code, ", ".join(sorted(changes)))
        return await self.get_by_id(permission_id)

    async def deactivate(self, permission_id: str) -> PermissionDefinition:
        permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError(f"Permission not found: {permission_id}", {"permission_id": permission_id})
        permission.is_active = False
        await self.db.commit()
        self.cache.invalidate()
        log.info("Catalog: deactivated permission %s", permission.code)
        return await self.get_by_id(permission_id)

    async def delete(self, permission_id: str) -> None:
        permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError(f"Permission not found: {permission_id}", {"permission_id": permission_id})
        if permission.is_system:
            raise ProtectedPermissionError("System permissions cannot be deleted", {"code": permission.code})
        if await self._is_referenced(permission_id):
            raise ProtectedPermissionError("Cannot delete permission that is in use", {"code": permission.code})

        child = (await self.db.execute(
            select(Permission.id).where(Permission.parent_id == permission_id).limit(1)
        )).first()
        if child is not None:
            raise InvalidGraphError("Cannot delete permission that has children", {"code": permission.code})

        # SQLite does not enforce ON DELETE CASCADE without a pragma
        await self.db.execute(delete(permission_dependencies).where(
            or_(
                permission_dependencies.c.permission_id == permission_id,
                permission_dependencies.c.depends_on_id == permission_id,
            )
        ))
        await self.db.execute(delete(permission_conflicts).where(
            or_(
                permission_conflicts.c.permission_id == permission_id,
                permission_conflicts.c.conflicts_with_id == permission_id,
            )
        ))
        code = permission.code
        await self.db.delete(permission)
        await self.db.commit()
        self.cache.invalidate()
        log.info("Catalog: deleted permission %s", code)

    # ------------------------------------------------------------------
    # Graph validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_codes(snapshot: CatalogSnapshot, codes: Iterable[str], field_name: str) -> Set[str]:
        ids = set()
        unknown = []
        for code in codes:
            definition = snapshot.by_code.get(code)
            if definition is None:
                unknown.append(code)
            else:
                ids.add(definition.id)
        if unknown:
            raise InvalidGraphError(
                f"Unknown permissions in {field_name}: {', '.join(sorted(unknown))}",
                {field_name: sorted(unknown)},
            )
        return ids

    @staticmethod
    def _resolve_parent(snapshot: CatalogSnapshot, parent_code: Optional[str]) -> Optional[PermissionDefinition]:
        if not parent_code:
            return None
        parent = snapshot.by_code.get(parent_code)
        if parent is None:
            raise InvalidGraphError(f"Unknown parent permission: {parent_code}", {"parent_code": parent_code})
        return parent

    @staticmethod
    def _check_edges(permission_id: Optional[str], dependency_ids: Set[str], conflict_ids: Set[str]) -> None:
        overlap = dependency_ids & conflict_ids
        if overlap:
            raise InvalidGraphError(
                "A permission cannot both depend on and conflict with the same permission",
                {"overlap": sorted(overlap)},
            )
        if permission_id is not None and (permission_id in dependency_ids or permission_id in conflict_ids):
            raise InvalidGraphError("A permission cannot reference itself", {"permission_id": permission_id})

    @staticmethod
    def _check_reverse_conflicts(
        snapshot: CatalogSnapshot,
        permission_id: str,
        dependency_ids: Set[str],
        conflict_ids: Set[str],
    ) -> None:
        # Grants check conflicts in both directions, so a dependency that
        # conflicts back would make the permission ungrantable
        conflicted_by = {p.id for p in snapshot.by_id.values() if permission_id in p.conflicts}
        dependents = {p.id for p in snapshot.by_id.values() if permission_id in p.dependencies}
        overlap = (dependency_ids & conflicted_by) | (conflict_ids & dependents)
        if overlap:
            codes = sorted(snapshot.by_id[other_id].code for other_id in overlap)
            raise InvalidGraphError(
                "A permission cannot depend on a permission that conflicts with it",
                {"overlap": codes},
            )

    @staticmethod
    def _check_parent_cycle(
        snapshot: CatalogSnapshot,
        permission_id: str,
        parent: Optional[PermissionDefinition],
    ) -> None:
        node = parent
        while node is not None:
            if node.id == permission_id:
                raise InvalidGraphError("Parent assignment would create a cycle", {"permission_id": permission_id})
            node = snapshot.by_id.get(node.parent_id) if node.parent_id else None

    @staticmethod
    def _check_dependency_cycles(snapshot: CatalogSnapshot, permission_id: str, dependency_ids: Set[str]) -> None:
        # Walk the proposed dependencies; reaching permission_id again means
        # neither end of the cycle could ever be granted
        stack = list(dependency_ids)
        seen: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == permission_id:
                raise InvalidGraphError("Dependencies would create a cycle", {"permission_id": permission_id})
            if current in seen:
                continue
            seen.add(current)
            definition = snapshot.by_id.get(current)
            if definition is not None:
                stack.extend(definition.dependencies)

    async def _replace_edges(self, permission_id: str, dependency_ids: Set[str], conflict_ids: Set[str]) -> None:
        await self.db.execute(
            delete(permission_dependencies).where(permission_dependencies.c.permission_id == permission_id)
        )
        await self.db.execute(
            delete(permission_conflicts).where(permission_conflicts.c.permission_id == permission_id)
        )
        if dependency_ids:
            await self.db.execute(insert(permission_dependencies), [
                {"permission_id": permission_id, "depends_on_id": dep_id} for dep_id in sorted(dependency_ids)
            ])
        if conflict_ids:
            await self.db.execute(insert(permission_conflicts), [
                {"permission_id": permission_id, "conflicts_with_id": other_id} for other_id in sorted(conflict_ids)
            ])

    async def _rebuild_paths(self) -> None:
        """Recompute path/level for the whole forest after a re-parent."""
        permissions = (await self.db.execute(select(Permission))).scalars().all()
        children: Dict[Optional[str], List[Permission]] = defaultdict(list)
        for p in permissions:
            children[p.parent_id].append(p)

        stack = [(root, "", 0) for root in children[None]]
        while stack:
            node, path, level = stack.pop()
            node.path = path
            node.level = level
            for child in children.get(node.id, []):
                stack.append((child, _child_path(node), level + 1))

    async def _is_referenced(self, permission_id: str) -> bool:
        from app.features.grants.models import Grant

        row = (await self.db.execute(
            select(Grant.id).where(Grant.permission_id == permission_id).limit(1)
        )).first()
        return row is not None
