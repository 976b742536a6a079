"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from app.features.users.models import Role, UserStatus


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for registering a user known to the identity layer."""
    role: Role
    access_level: int = Field(1, ge=1, le=5)
    two_factor_enabled: bool = False


class UserUpdate(BaseModel):
    """Schema for administrative updates of authorization attributes."""
    name: str | None = Field(None, min_length=1, max_length=255)
    role: Role | None = None
    access_level: int | None = Field(None, ge=1, le=5)
    two_factor_enabled: bool | None = None
    status: UserStatus | None = None


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    role: Role
    access_level: int
    two_factor_enabled: bool
    status: UserStatus
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str
    role: Role

    model_config = {"from_attributes": True}
