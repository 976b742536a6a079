"""
Pydantic schemas for grants, effective permissions and access checks.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

from app.features.grants.models import ApprovalState, GrantStatus


# ============================================================================
# Grant Requests
# ============================================================================

class GrantCreate(BaseModel):
    """Schema for granting a permission to a user."""
    permission_code: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)
    expires_at: Optional[datetime] = Field(None, description="Omit for a permanent grant")
    can_delegate: bool = False
    delegation_limit: int = Field(0, ge=0, le=100)
    conditions: Optional[Dict[str, Any]] = Field(None, description="Opaque predicate evaluated by the caller")

    @model_validator(mode='after')
    def delegation_consistent(self) -> "GrantCreate":
        if self.delegation_limit and not self.can_delegate:
            raise ValueError('delegation_limit requires can_delegate')
        return self


class TemporaryGrantCreate(BaseModel):
    """Schema for a time-limited grant expressed in hours."""
    permission_code: str = Field(..., min_length=1, max_length=100)
    hours: int = Field(..., ge=1, le=24 * 365)
    reason: Optional[str] = Field(None, max_length=1000)


class GrantRevoke(BaseModel):
    permission_code: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)


class GrantDelegate(BaseModel):
    """Schema for passing a delegable grant on to another user."""
    permission_code: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)
    expires_at: Optional[datetime] = None


class GrantReview(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


# ============================================================================
# Responses
# ============================================================================

class GrantResponse(BaseModel):
    """Schema for grant response."""
    id: str
    user_id: str
    permission_id: str
    permission_code: Optional[str] = None
    granted_by: Optional[str]
    granted_at: datetime
    grant_reason: Optional[str]
    expires_at: Optional[datetime]
    can_delegate: bool
    delegation_limit: int
    delegated_from_id: Optional[str]
    conditions: Optional[Dict[str, Any]]
    approval_state: ApprovalState
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    revoked_at: Optional[datetime]
    revoked_by: Optional[str]
    revoke_reason: Optional[str]
    status: GrantStatus

    model_config = ConfigDict(from_attributes=True)


class RevokeResponse(BaseModel):
    revoked: bool
    grant: Optional[GrantResponse] = None


class EffectivePermissionResponse(BaseModel):
    code: str
    permission_id: str
    source: str
    grant_id: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    conditions: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class UserEffectivePermissions(BaseModel):
    """Effective permission set of one user."""
    user_id: str
    all_permissions: bool = Field(False, description="True for administrators")
    codes: List[str]
    permissions: List[EffectivePermissionResponse]


class AccessDecisionResponse(BaseModel):
    user_id: str
    code: str
    held: bool
    allowed: bool
    step_up_required: bool
    requires_approval: bool
    reason: Optional[str] = None
