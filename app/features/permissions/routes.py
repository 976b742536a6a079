"""
Permission catalog API routes.

Provides endpoints for reading the catalog (flat, by category, as a tree),
usage counts, and validated administrative writes.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, status

from app.features.grants.dependencies import get_catalog, require_permission
from app.features.permissions.catalog import PermissionCatalog, PermissionDefinition, PermissionNode
from app.features.permissions.models import RiskLevel
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    PermissionTreeNode,
    PermissionsByCategory,
    PermissionUsageResponse,
)
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _to_response(definition: PermissionDefinition) -> PermissionResponse:
    return PermissionResponse(
        id=definition.id,
        code=definition.code,
        name=definition.name,
        description=definition.description,
        category=definition.category,
        module=definition.module,
        parent_id=definition.parent_id,
        path=definition.path,
        level=definition.level,
        risk_level=definition.risk_level,
        requires_2fa=definition.requires_2fa,
        requires_approval=definition.requires_approval,
        default_for_roles=sorted(definition.default_for_roles),
        excluded_from_roles=sorted(definition.excluded_from_roles),
        min_access_level=definition.min_access_level,
        dependencies=sorted(definition.dependencies),
        conflicts=sorted(definition.conflicts),
        is_active=definition.is_active,
        is_system=definition.is_system,
    )


def _to_tree_node(node: PermissionNode) -> PermissionTreeNode:
    return PermissionTreeNode(
        permission=_to_response(node.permission),
        children=[_to_tree_node(child) for child in node.children],
    )


# ============================================================================
# Catalog reads
# ============================================================================

@router.get("/", response_model=List[PermissionResponse])
async def list_permissions(
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
    category: Optional[str] = None,
    module: Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    include_inactive: bool = False,
):
    """List permissions with optional filtering."""
    definitions = await (catalog.list_all() if include_inactive else catalog.list_active())
    if category:
        definitions = [d for d in definitions if d.category == category]
    if module:
        definitions = [d for d in definitions if d.module == module]
    if risk_level:
        definitions = [d for d in definitions if d.risk_level == risk_level]
    return [_to_response(d) for d in definitions]


@router.get("/by-category", response_model=PermissionsByCategory)
async def list_permissions_by_category(
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
):
    grouped = await catalog.grouped_by_category()
    return PermissionsByCategory(
        categories={category: [_to_response(d) for d in items] for category, items in grouped.items()}
    )


@router.get("/tree", response_model=List[PermissionTreeNode])
async def get_permission_tree(
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
):
    """Permission hierarchy, for display only."""
    return [_to_tree_node(node) for node in await catalog.tree()]


@router.get("/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
):
    """Get a specific permission by ID."""
    return _to_response(await catalog.get_by_id(permission_id))


@router.get("/{permission_id}/children", response_model=List[PermissionResponse])
async def get_permission_children(
    permission_id: str,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
):
    return [_to_response(d) for d in await catalog.children(permission_id)]


@router.get("/{permission_id}/usage", response_model=PermissionUsageResponse)
async def get_permission_usage(
    permission_id: str,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.view"))],
):
    """Number of users holding the permission directly and through role defaults."""
    usage = await catalog.usage(permission_id)
    return PermissionUsageResponse(
        permission_id=permission_id,
        direct_users=usage.direct_users,
        role_users=usage.role_users,
        total_users=usage.total_users,
    )


# ============================================================================
# Administrative writes
# ============================================================================

@router.post("/", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    data: PermissionCreate,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    """Create a new permission definition."""
    definition = await catalog.create(data)
    log.info("Permission %s created by %s", definition.code, current_user.id)
    return _to_response(definition)


@router.patch("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    data: PermissionUpdate,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    """Update a permission definition. Unset fields are left unchanged."""
    definition = await catalog.update(permission_id, data)
    log.info("Permission %s updated by %s", definition.code, current_user.id)
    return _to_response(definition)


@router.post("/{permission_id}/deactivate", response_model=PermissionResponse)
async def deactivate_permission(
    permission_id: str,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    """Deactivate a permission. Existing grants stop counting immediately in this process."""
    return _to_response(await catalog.deactivate(permission_id))


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    """Delete a permission that is neither a system permission nor referenced by any grant."""
    await catalog.delete(permission_id)
    log.info("Permission %s deleted by %s", permission_id, current_user.id)
