"""
Bulk grant and revoke.

Each (user, permission) pair goes through the normal ``GrantStore`` path in
its own session and transaction. A failing pair is reported in its result
and never rolls back or stops any other pair.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.errors import PermissionEngineError
from app.core.notifications import Notifier
from app.features.grants.models import ApprovalState
from app.features.grants.store import GrantStore
from app.features.permissions.catalog import CatalogCache, PermissionCatalog, catalog_cache
from app.utils import as_utc, get_logger


log = get_logger(__name__)


@dataclass
class BulkResult:
    user_id: str
    permission_code: str
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    grant_id: Optional[str] = None
    pending: bool = False


PairOperation = Callable[[GrantStore, str, str], Awaitable[BulkResult]]


class BulkCoordinator:
    """
    Usage:
        coordinator = BulkCoordinator(AsyncSessionLocal)
        results = await coordinator.bulk_grant(["u1", "u2"], ["reports.read"], admin.id, "quarter close")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[Notifier] = None,
        cache: CatalogCache = catalog_cache,
        max_concurrency: int = config.BULK_MAX_CONCURRENCY,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.cache = cache
        self.max_concurrency = max(1, max_concurrency)

    async def bulk_grant(
        self,
        user_ids: Sequence[str],
        permission_codes: Sequence[str],
        actor_id: Optional[str],
        reason: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> List[BulkResult]:
        """Grant every code to every user. Results follow input order, users outermost."""
        expires_at = as_utc(expires_at)

        async def grant_pair(store: GrantStore, user_id: str, code: str) -> BulkResult:
            permission = await store.catalog.get(code)
            grant = await store.grant(user_id, permission.id, actor_id, reason, expires_at=expires_at)
            return BulkResult(
                user_id=user_id,
                permission_code=code,
                success=True,
                grant_id=grant.id,
                pending=grant.approval_state == ApprovalState.PENDING,
            )

        results = await self._run([(u, c) for u in user_ids for c in permission_codes], grant_pair)
        self._log_summary("grant", results)
        return results

    async def bulk_revoke(
        self,
        user_ids: Sequence[str],
        permission_codes: Sequence[str],
        actor_id: Optional[str],
        reason: Optional[str],
    ) -> List[BulkResult]:
        """Revoke every code from every user. Pairs with nothing to revoke succeed with no ``grant_id``."""

        async def revoke_pair(store: GrantStore, user_id: str, code: str) -> BulkResult:
            permission = await store.catalog.get(code)
            grant = await store.revoke(user_id, permission.id, actor_id, reason)
            return BulkResult(
                user_id=user_id,
                permission_code=code,
                success=True,
                grant_id=grant.id if grant else None,
            )

        results = await self._run([(u, c) for u in user_ids for c in permission_codes], revoke_pair)
        self._log_summary("revoke", results)
        return results

    async def clone_grants(
        self,
        source_user_id: str,
        target_user_id: str,
        actor_id: Optional[str],
        reason: Optional[str],
    ) -> List[BulkResult]:
        """
        Copy the source user's active direct grants to the target user.

        Role defaults are not copied. Expiry and conditions carry over;
        delegation rights do not.
        """
        async with self.session_factory() as db:
            store = GrantStore(db, catalog=PermissionCatalog(db, self.cache))
            await store.get_user(source_user_id)
            await store.get_user(target_user_id)
            snapshot = await store.catalog.snapshot()
            sources = {
                snapshot.by_id[g.permission_id].code: g
                for g in await store.list_active_for_user(source_user_id)
                if g.permission_id in snapshot.by_id
            }

        async def clone_pair(store: GrantStore, user_id: str, code: str) -> BulkResult:
            source = sources[code]
            grant = await store.grant(
                user_id,
                source.permission_id,
                actor_id,
                reason or f"Cloned from user {source_user_id}",
                expires_at=source.expires_at,
                conditions=source.conditions,
            )
            return BulkResult(
                user_id=user_id,
                permission_code=code,
                success=True,
                grant_id=grant.id,
                pending=grant.approval_state == ApprovalState.PENDING,
            )

        results = await self._run([(target_user_id, code) for code in sorted(sources)], clone_pair)
        self._log_summary("clone", results)
        return results

    async def _run(self, pairs: List[Tuple[str, str]], operation: PairOperation) -> List[BulkResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_pair(user_id: str, code: str) -> BulkResult:
            async with semaphore:
                async with self.session_factory() as db:
                    store = GrantStore(db, catalog=PermissionCatalog(db, self.cache), notifier=self.notifier)
                    try:
                        return await operation(store, user_id, code)
                    except PermissionEngineError as e:
                        log.info("Bulk pair failed: user=%s code=%s error=%s", user_id, code, e.code)
                        return BulkResult(user_id=user_id, permission_code=code, success=False,
                                          error=e.code, message=e.message)
                    except Exception as e:
                        log.exception("Bulk pair failed unexpectedly: user=%s code=%s", user_id, code)
                        return BulkResult(user_id=user_id, permission_code=code, success=False,
                                          error="internal_error", message=str(e))

        return list(await asyncio.gather(*(run_pair(u, c) for u, c in pairs)))

    @staticmethod
    def _log_summary(operation: str, results: List[BulkResult]) -> None:
        succeeded = sum(1 for r in results if r.success)
        log.info("Bulk %s completed: %d succeeded, %d failed", operation, succeeded, len(results) - succeeded)
