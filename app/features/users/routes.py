"""
User feature routes.

Users are owned by the identity layer; these routes expose and adjust the
attributes the permission engine consumes (role, access level, status, 2FA).
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.grants.dependencies import require_permission
from app.features.users.models import Role, User, UserStatus
from app.features.users.schemas import UserCreate, UserResponse, UserPublic, UserUpdate
from app.features.users.dependencies import get_current_user
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users.view"))],
):
    """Get a user's authorization attributes by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return user


@router.get("/", response_model=list[UserPublic])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users.view"))],
    role: Optional[Role] = None,
    user_status: Optional[UserStatus] = UserStatus.ACTIVE,
    skip: int = 0,
    limit: int = 50
):
    """List users (public info only), active ones by default."""
    stmt = select(User)
    if role:
        stmt = stmt.where(User.role == role)
    if user_status:
        stmt = stmt.where(User.status == user_status)
    result = await db.execute(stmt.order_by(User.name).offset(skip).limit(limit))
    return result.scalars().all()


@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    data: UserCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users.create"))],
):
    """Register a user already known to the identity layer."""
    user = User(
        email=data.email,
        name=data.name,
        role=data.role,
        access_level=data.access_level,
        two_factor_enabled=data.two_factor_enabled,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists"
        )
    await db.refresh(user)
    log.info("User %s registered by %s", user.id, current_user.id)
    return user


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    update_data: UserUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users.update"))],
):
    """Update role, access level, status or 2FA flag of a user."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    changes = update_data.model_dump(exclude_unset=True)

    # Prevent self-demotion and self-lockout
    if user.id == current_user.id and ("role" in changes or "status" in changes):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot modify your own role or status"
        )

    for key, value in changes.items():
        if value is not None:
            setattr(user, key, value)

    await db.commit()
    await db.refresh(user)
    log.info("User %s updated by %s: %s", user.id, current_user.id, ", ".join(sorted(changes)))
    return user
