"""
Grant API routes.

Provides endpoints for effective permissions, access checks, granting,
revoking, delegating and reviewing approval-gated grant requests.
"""
from datetime import timedelta
from typing import Annotated, List
from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.core.errors import PendingApproval
from app.features.grants.dependencies import (
    get_grant_store,
    require_any_permission,
    require_permission,
)
from app.features.grants.models import ApprovalState, Grant
from app.features.grants.resolver import AllPermissions
from app.features.grants.schemas import (
    AccessDecisionResponse,
    EffectivePermissionResponse,
    GrantCreate,
    GrantDelegate,
    GrantResponse,
    GrantReview,
    GrantRevoke,
    RevokeResponse,
    TemporaryGrantCreate,
    UserEffectivePermissions,
)
from app.features.grants.store import GrantStore
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger, utcnow


log = get_logger(__name__)
router = APIRouter()


async def _to_response(store: GrantStore, grant: Grant) -> GrantResponse:
    snapshot = await store.catalog.snapshot()
    definition = snapshot.by_id.get(grant.permission_id)
    return GrantResponse.model_validate(
        {
            **{column: getattr(grant, column) for column in GrantResponse.model_fields if hasattr(grant, column)},
            "permission_code": definition.code if definition else None,
            "status": grant.status_at(utcnow()),
        }
    )


# ============================================================================
# Effective permissions
# ============================================================================

@router.get("/users/{user_id}/effective", response_model=UserEffectivePermissions)
async def get_effective_permissions(
    user_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    """Effective permissions of a user (self, or anyone with permission.view)."""
    if current_user.id != user_id and not (await store.resolver.check(current_user, "permission.view")).allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied: permission.view")

    user = await store.get_user(user_id)
    effective = await store.resolver.resolve(user)
    explained = await store.resolver.explain(user)
    return UserEffectivePermissions(
        user_id=user.id,
        all_permissions=isinstance(effective, AllPermissions),
        codes=sorted(p.code for p in explained),
        permissions=[EffectivePermissionResponse.model_validate(p) for p in explained],
    )


@router.get("/users/{user_id}/check", response_model=AccessDecisionResponse)
async def check_permission(
    user_id: str,
    code: str,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
):
    """Assignment and step-up state of one permission for a user."""
    user = await store.get_user(user_id)
    decision = await store.resolver.check(user, code)
    return AccessDecisionResponse(
        user_id=user.id,
        code=decision.code,
        held=decision.held,
        allowed=decision.allowed,
        step_up_required=decision.step_up_required,
        requires_approval=decision.requires_approval,
        reason=decision.reason,
    )


# ============================================================================
# Grant history and mutations
# ============================================================================

@router.get("/users/{user_id}", response_model=List[GrantResponse])
async def list_user_grants(
    user_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
    include_inactive: bool = True,
):
    """Grant history of a user, newest first."""
    await store.get_user(user_id)
    grants = await store.list_for_user(user_id, include_inactive=include_inactive)
    return [await _to_response(store, g) for g in grants]


@router.post("/users/{user_id}", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_permission(
    user_id: str,
    data: GrantCreate,
    response: Response,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.grant"))],
):
    """Grant a permission. Answers 202 when the grant awaits approval."""
    permission = await store.catalog.get(data.permission_code)
    grant = await store.grant(
        user_id,
        permission.id,
        actor_id=current_user.id,
        reason=data.reason,
        expires_at=data.expires_at,
        can_delegate=data.can_delegate,
        delegation_limit=data.delegation_limit,
        conditions=data.conditions,
    )
    if grant.approval_state == ApprovalState.PENDING:
        response.status_code = PendingApproval.status_code
    return await _to_response(store, grant)


@router.post("/users/{user_id}/temporary", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_temporary_permission(
    user_id: str,
    data: TemporaryGrantCreate,
    response: Response,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_any_permission(["permission.grant", "permission.grant_temporary"]))],
):
    """Grant a permission for a number of hours."""
    permission = await store.catalog.get(data.permission_code)
    now = utcnow()
    grant = await store.grant(
        user_id,
        permission.id,
        actor_id=current_user.id,
        reason=data.reason or f"Temporary access for {data.hours} hours",
        expires_at=now + timedelta(hours=data.hours),
        now=now,
    )
    if grant.approval_state == ApprovalState.PENDING:
        response.status_code = PendingApproval.status_code
    return await _to_response(store, grant)


@router.post("/users/{user_id}/revoke", response_model=RevokeResponse)
async def revoke_permission(
    user_id: str,
    data: GrantRevoke,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.revoke"))],
):
    """Revoke a permission. Revoking something not held is not an error."""
    permission = await store.catalog.get(data.permission_code)
    grant = await store.revoke(user_id, permission.id, actor_id=current_user.id, reason=data.reason)
    if grant is None:
        return RevokeResponse(revoked=False)
    return RevokeResponse(revoked=True, grant=await _to_response(store, grant))


@router.post("/users/{user_id}/delegate", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def delegate_permission(
    user_id: str,
    data: GrantDelegate,
    response: Response,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    """Pass one of the current user's delegable grants on to ``user_id``."""
    permission = await store.catalog.get(data.permission_code)
    grant = await store.delegate(
        current_user.id,
        user_id,
        permission.id,
        reason=data.reason,
        expires_at=data.expires_at,
    )
    if grant.approval_state == ApprovalState.PENDING:
        response.status_code = PendingApproval.status_code
    return await _to_response(store, grant)


# ============================================================================
# Approval workflow
# ============================================================================

@router.get("/pending", response_model=List[GrantResponse])
async def list_pending_grants(
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    """Grant requests waiting for approval."""
    return [await _to_response(store, g) for g in await store.list_pending()]


@router.post("/{grant_id}/approve", response_model=GrantResponse)
async def approve_grant(
    grant_id: str,
    data: GrantReview,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    grant = await store.approve(grant_id, actor_id=current_user.id, reason=data.reason)
    return await _to_response(store, grant)


@router.post("/{grant_id}/reject", response_model=GrantResponse)
async def reject_grant(
    grant_id: str,
    data: GrantReview,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    grant = await store.reject(grant_id, actor_id=current_user.id, reason=data.reason)
    return await _to_response(store, grant)


@router.get("/expired", response_model=List[GrantResponse])
async def list_expired_grants(
    store: Annotated[GrantStore, Depends(get_grant_store)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
    include_swept: bool = False,
):
    """Approved grants past their expiry, by default only those not yet swept."""
    return [await _to_response(store, g) for g in await store.list_expired(include_swept=include_swept)]
