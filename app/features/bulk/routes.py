"""
Bulk operation API routes.

Partial success is the normal outcome: the response is always 200 with one
result per (user, permission) pair.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.engine import get_session_factory
from app.core.notifications import Notifier
from app.features.bulk.coordinator import BulkCoordinator, BulkResult
from app.features.bulk.schemas import (
    BulkGrantRequest,
    BulkResponse,
    BulkResultResponse,
    BulkRevokeRequest,
    CloneGrantsRequest,
)
from app.features.grants.dependencies import get_notifier, require_permission
from app.features.users.models import User


router = APIRouter()


def get_bulk_coordinator(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> BulkCoordinator:
    return BulkCoordinator(session_factory, notifier=notifier)


def _response(results: List[BulkResult]) -> BulkResponse:
    succeeded = sum(1 for r in results if r.success)
    return BulkResponse(
        results=[BulkResultResponse.model_validate(r) for r in results],
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


@router.post("/grant", response_model=BulkResponse)
async def bulk_grant(
    data: BulkGrantRequest,
    coordinator: Annotated[BulkCoordinator, Depends(get_bulk_coordinator)],
    current_user: Annotated[User, Depends(require_permission("permission.grant"))],
):
    results = await coordinator.bulk_grant(
        data.user_ids, data.permission_codes, current_user.id, data.reason, expires_at=data.expires_at
    )
    return _response(results)


@router.post("/revoke", response_model=BulkResponse)
async def bulk_revoke(
    data: BulkRevokeRequest,
    coordinator: Annotated[BulkCoordinator, Depends(get_bulk_coordinator)],
    current_user: Annotated[User, Depends(require_permission("permission.revoke"))],
):
    results = await coordinator.bulk_revoke(data.user_ids, data.permission_codes, current_user.id, data.reason)
    return _response(results)


@router.post("/clone", response_model=BulkResponse)
async def clone_grants(
    data: CloneGrantsRequest,
    coordinator: Annotated[BulkCoordinator, Depends(get_bulk_coordinator)],
    current_user: Annotated[User, Depends(require_permission("permission.grant"))],
):
    """Copy the source user's direct grants to the target user."""
    results = await coordinator.clone_grants(
        data.source_user_id, data.target_user_id, current_user.id, data.reason
    )
    return _response(results)
