"""
FastAPI dependencies for the grant store and route protection.

Every route-level authorization decision goes through ``resolver.check``, so the
admin bypass and the 2FA step-up apply here as they do everywhere else.
"""
from typing import Annotated, List

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import StepUpRequiredError
from app.core.notifications import LoggingNotifier, Notifier
from app.features.grants.resolver import EffectivePermissionResolver
from app.features.grants.store import GrantStore
from app.features.permissions.catalog import PermissionCatalog
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

_notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    """Notifier used for grant events. Overridden in tests."""
    return _notifier


def get_catalog(db: Annotated[AsyncSession, Depends(get_db)]) -> PermissionCatalog:
    return PermissionCatalog(db)


def get_grant_store(
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> GrantStore:
    return GrantStore(db, catalog=catalog, notifier=notifier)


def get_resolver(store: Annotated[GrantStore, Depends(get_grant_store)]) -> EffectivePermissionResolver:
    return store.resolver


def require_permission(code: str):
    """
    FastAPI dependency to require a specific permission.

    The permission must be held and exercisable: a held 2FA-gated permission
    on a user without 2FA answers 403 ``step_up_required``.

    Usage:
        @router.post("/grants/users/{user_id}")
        async def grant_permission(
            user: User = Depends(require_permission("permission.grant"))
        ):
            ...

    Raises:
        StepUpRequiredError: 403 if the permission is held but needs 2FA
        HTTPException: 403 if the current user does not hold ``code``
    """
    async def permission_dependency(
        current_user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[EffectivePermissionResolver, Depends(get_resolver)],
    ) -> User:
        decision = await resolver.check(current_user, code)
        if decision.allowed:
            return current_user
        log.warning("Permission denied: user=%s code=%s reason=%s", current_user.id, code, decision.reason)
        if decision.step_up_required:
            raise StepUpRequiredError(
                f"Permission {code} requires two-factor authentication",
                {"code": code, "user_id": current_user.id},
            )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: {code}"
        )

    return permission_dependency


def require_any_permission(codes: List[str]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.post("/grants/users/{user_id}/temporary")
        async def grant_temporary_permission(
            user: User = Depends(require_any_permission(["permission.grant", "permission.grant_temporary"]))
        ):
            ...
    """
    async def permission_dependency(
        current_user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[EffectivePermissionResolver, Depends(get_resolver)],
    ) -> User:
        decisions = [await resolver.check(current_user, code) for code in codes]
        if any(d.allowed for d in decisions):
            return current_user
        log.warning("Permission denied: user=%s requires one of %s", current_user.id, codes)
        step_up = [d.code for d in decisions if d.step_up_required]
        if step_up:
            raise StepUpRequiredError(
                f"Permissions {step_up} require two-factor authentication",
                {"codes": step_up, "user_id": current_user.id},
            )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: requires one of {codes}"
        )

    return permission_dependency
