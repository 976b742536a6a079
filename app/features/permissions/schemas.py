"""
Pydantic schemas for the permission catalog.

Request and response models for permission definitions, the category
grouping, the organizational tree and usage counts.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from app.features.permissions.models import RiskLevel
from app.features.users.models import Role


def _check_code(v: str) -> str:
    if not v.replace('_', '').replace('.', '').replace('-', '').isalnum():
        raise ValueError('Permission code must contain only alphanumeric characters, underscores, dots, and hyphens')
    return v.lower()


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Stable permission key, e.g. 'users.delete'")
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")
    category: str = Field(..., min_length=1, max_length=100, description="Grouping shown in the admin UI")
    module: Optional[str] = Field(None, max_length=100)
    risk_level: RiskLevel = RiskLevel.LOW
    requires_2fa: bool = False
    requires_approval: bool = False
    default_for_roles: List[Role] = []
    excluded_from_roles: List[Role] = []
    min_access_level: int = Field(1, ge=1, le=5)
    is_active: bool = True


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""
    parent_code: Optional[str] = Field(None, description="Code of the parent permission in the tree")
    dependencies: List[str] = Field([], description="Codes that must be held before this one can be granted")
    conflicts: List[str] = Field([], description="Codes that cannot be held together with this one")

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Validate permission code format."""
        return _check_code(v)

    @model_validator(mode='after')
    def edges_disjoint(self) -> "PermissionCreate":
        if set(self.dependencies) & set(self.conflicts):
            raise ValueError('dependencies and conflicts must not overlap')
        return self


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. Unset fields are left unchanged."""
    code: Optional[str] = Field(None, min_length=1, max_length=100)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    module: Optional[str] = Field(None, max_length=100)
    parent_code: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    requires_2fa: Optional[bool] = None
    requires_approval: Optional[bool] = None
    default_for_roles: Optional[List[Role]] = None
    excluded_from_roles: Optional[List[Role]] = None
    min_access_level: Optional[int] = Field(None, ge=1, le=5)
    dependencies: Optional[List[str]] = None
    conflicts: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator('code')
    @classmethod
    def code_format(cls, v: Optional[str]) -> Optional[str]:
        return _check_code(v) if v is not None else v


class PermissionResponse(BaseModel):
    """Schema for permission response."""
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
    default_for_roles: List[str]
    excluded_from_roles: List[str]
    min_access_level: int
    dependencies: List[str]
    conflicts: List[str]
    is_active: bool
    is_system: bool

    model_config = ConfigDict(from_attributes=True)


class PermissionTreeNode(BaseModel):
    """Permission with its children, for the hierarchy view."""
    permission: PermissionResponse
    children: List["PermissionTreeNode"] = []

    model_config = ConfigDict(from_attributes=True)


class PermissionsByCategory(BaseModel):
    categories: Dict[str, List[PermissionResponse]]


class PermissionUsageResponse(BaseModel):
    permission_id: str
    direct_users: int
    role_users: int
    total_users: int
