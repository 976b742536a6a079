"""
Audit trail API routes.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.audit.logger import AuditLogger
from app.features.audit.models import AuditAction
from app.features.audit.schemas import AuditEntryListResponse, AuditEntryResponse
from app.features.grants.dependencies import require_permission
from app.features.users.models import User


router = APIRouter()


def get_audit_logger(db: Annotated[AsyncSession, Depends(get_db)]) -> AuditLogger:
    return AuditLogger(db)


@router.get("/", response_model=AuditEntryListResponse)
async def list_audit_entries(
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
    current_user: Annotated[User, Depends(require_permission("permission.audit"))],
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    user_id: Optional[str] = None,
    permission_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
):
    """List audit entries with optional filtering, newest first."""
    entries, total = await audit.query(
        user_id=user_id,
        permission_id=permission_id,
        actor_id=actor_id,
        action=action,
        skip=skip,
        limit=limit,
    )

    pages = (total + limit - 1) // limit
    page = (skip // limit) + 1

    return AuditEntryListResponse(
        items=[AuditEntryResponse.model_validate(entry) for entry in entries],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )


@router.get("/users/{user_id}", response_model=List[AuditEntryResponse])
async def list_user_audit_entries(
    user_id: str,
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
    current_user: Annotated[User, Depends(require_permission("permission.audit"))],
):
    """Full audit history of one user, oldest first."""
    return await audit.query_for_user(user_id)


@router.get("/permissions/{permission_id}", response_model=List[AuditEntryResponse])
async def list_permission_audit_entries(
    permission_id: str,
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
    current_user: Annotated[User, Depends(require_permission("permission.audit"))],
):
    """Full audit history of one permission, oldest first."""
    return await audit.query_for_permission(permission_id)
