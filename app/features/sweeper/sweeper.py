"""
Expiration sweeper.

Moves approved grants past their ``expires_at`` into the expired state and
records one ``expire`` audit entry per grant. Each grant is swept in its own
transaction with a compare-and-swap on ``swept_at``, so concurrent sweepers
(several workers, or the loop racing an on-demand run) never report the same
expiry twice, and one failing grant never stops the rest.
"""
import asyncio
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.notifications import GrantEvent, Notifier, dispatch
from app.features.audit.logger import AuditLogger, entry_for
from app.features.audit.models import AuditAction, AuditEntry
from app.features.grants.models import ApprovalState, Grant
from app.features.grants.store import GrantStore
from app.features.permissions.catalog import CatalogCache, PermissionCatalog, catalog_cache
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)


class ExpirationSweeper:
    """
    Usage:
        sweeper = ExpirationSweeper(AsyncSessionLocal, notifier=LoggingNotifier())
        entries = await sweeper.sweep_expired()      # on demand
        await sweeper.start(interval_seconds=300)    # background loop
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[Notifier] = None,
        cache: CatalogCache = catalog_cache,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.cache = cache
        self._task: Optional[asyncio.Task] = None
        self._is_running = False

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[AuditEntry]:
        """Sweep every expired, unswept grant. Returns the audit entries written by this run."""
        now = as_utc(now) or utcnow()
        async with self.session_factory() as db:
            store = GrantStore(db, catalog=PermissionCatalog(db, self.cache))
            candidates = [grant.id for grant in await store.list_expired(now)]

        entries: List[AuditEntry] = []
        for grant_id in candidates:
            try:
                entry = await self._sweep_one(grant_id, now)
            except Exception:
                # Left unswept; the next run retries it
                log.exception("Sweep failed for grant %s", grant_id)
                continue
            if entry is not None:
                entries.append(entry)

        if candidates:
            log.info("Sweep at %s: %d expired, %d recorded", now.isoformat(), len(candidates), len(entries))
        return entries

    async def _sweep_one(self, grant_id: str, now: datetime) -> Optional[AuditEntry]:
        async with self.session_factory() as db:
            try:
                result = await db.execute(
                    update(Grant)
                    .where(
                        and_(
                            Grant.id == grant_id,
                            Grant.swept_at.is_(None),
                            Grant.revoked_at.is_(None),
                            Grant.approval_state == ApprovalState.APPROVED,
                            Grant.expires_at <= now,
                        )
                    )
                    .values(swept_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another sweeper, or a revoke, got there first
                    await db.rollback()
                    return None

                grant = await db.get(Grant, grant_id)
                definition = (await self.cache.snapshot(db)).by_id.get(grant.permission_id)
                code = definition.code if definition else None
                entry = await AuditLogger(db).record(
                    entry_for(grant, AuditAction.EXPIRE, None, "expired", now, code)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        await dispatch(self.notifier, [
            GrantEvent(
                action="expire",
                user_id=grant.user_id,
                permission_id=grant.permission_id,
                grant_id=grant.id,
                actor_id=None,
                timestamp=now,
                details={"permission_code": code, "expires_at": grant.expires_at},
            )
        ])
        return entry

    async def run_forever(self, interval_seconds: float) -> None:
        """Sweep on a fixed interval until cancelled."""
        while self._is_running:
            try:
                await self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("Sweep run failed")
            try:
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break

    async def start(self, interval_seconds: float) -> None:
        if self._is_running:
            return
        self._is_running = True
        self._task = asyncio.create_task(self.run_forever(interval_seconds))
        log.info("Expiration sweeper started (every %ss)", interval_seconds)

    async def stop(self) -> None:
        if not self._is_running:
            return
        self._is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("Expiration sweeper stopped")
