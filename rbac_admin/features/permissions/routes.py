"""
Role and permission management API routes.

Provides endpoints for role CRUD, per-role permission grants, bulk
add/remove, the baseline permission matrix and the audit trail. Domain
errors raised by the registry and store are rendered by the
application-level RbacError handler.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core import config
from rbac_admin.core.database.engine import get_db
from rbac_admin.core.errors import RbacError
from rbac_admin.core.rate_limit import limiter
from rbac_admin.features.catalog.catalog import StaticCatalog, get_catalog
from rbac_admin.features.permissions.dependencies import (
    AuditContext,
    create_audit_log,
    get_permission_backend,
    get_permission_store,
    get_role_registry,
    get_staging_manager,
)
from rbac_admin.features.permissions.domain import PermissionKey, RoleSnapshot, index_roles, scope_to_dict
from rbac_admin.features.permissions.models import AuditLog
from rbac_admin.features.permissions.registry import RoleRegistry
from rbac_admin.features.permissions.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    BulkOperationResult,
    BulkPermissionRequest,
    BulkPermissionResult,
    PermissionCreate,
    PermissionMatrixResponse,
    PermissionResponse,
    PermissionWithRole,
    RoleCreate,
    RolePermissionsReplace,
    RoleResponse,
    RoleUpdate,
    RoleWithPermissions,
)
from rbac_admin.features.permissions.store import PermissionStore
from rbac_admin.features.staging.backend import DatabasePermissionBackend
from rbac_admin.features.staging.manager import StagingSessionManager
from rbac_admin.features.staging.matrix import build_matrix
from rbac_admin.utils import get_logger


log = get_logger(__name__)
router = APIRouter()
audit_router = APIRouter()


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: RoleRegistry = Depends(get_role_registry),
):
    """Create a new (non-system) role with no permissions."""
    db_role = await registry.create_role(role.name, role.display_name, role.description)
    response = RoleWithPermissions.from_model(db_role)

    await create_audit_log(
        db,
        AuditContext(request),
        action="create",
        resource_type="role",
        resource_id=db_role.id,
        details=role.model_dump(),
    )
    return response


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    is_system: Optional[bool] = None,
    registry: RoleRegistry = Depends(get_role_registry),
):
    """List roles, optionally only system or only custom ones."""
    roles = await registry.list_roles()
    if is_system is not None:
        roles = [r for r in roles if r.is_system == is_system]
    return sorted(roles, key=lambda r: r.name)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    registry: RoleRegistry = Depends(get_role_registry),
):
    """Get a specific role with its permissions."""
    return RoleWithPermissions.from_model(await registry.get_role(role_id))


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: RoleRegistry = Depends(get_role_registry),
):
    """Update a role's display name or description (system roles are read-only)."""
    update_data = role_update.model_dump(exclude_unset=True)
    db_role = await registry.update_role(role_id, **update_data)
    response = RoleResponse.model_validate(db_role)

    await create_audit_log(
        db,
        AuditContext(request),
        action="update",
        resource_type="role",
        resource_id=role_id,
        details=update_data,
    )
    return response


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: RoleRegistry = Depends(get_role_registry),
    sessions: StagingSessionManager = Depends(get_staging_manager),
):
    """Delete a role, its permissions and user assignments."""
    role = await registry.get_role(role_id)
    role_name = role.name
    await registry.delete_role(role_id)

    # Commits the deletion together with its audit entry
    await create_audit_log(
        db,
        AuditContext(request),
        action="delete",
        resource_type="role",
        resource_id=role_id,
        details={"name": role_name},
    )

    # Only a committed deletion may drop staged edits for the role
    sessions.forget_role(role_id)
    return None


# ============================================================================
# Role Permission Routes
# ============================================================================

@router.get("/roles/{role_id}/permissions", response_model=List[PermissionResponse])
async def list_role_permissions(
    role_id: str,
    store: PermissionStore = Depends(get_permission_store),
):
    """List the permissions held by a role."""
    return [PermissionResponse.from_model(p) for p in await store.list_permissions(role_id)]


@router.post(
    "/roles/{role_id}/permissions",
    response_model=PermissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_permission(
    role_id: str,
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    store: PermissionStore = Depends(get_permission_store),
):
    """Grant (resource, action, scope) to a role."""
    db_permission = await store.add_permission(
        role_id, permission.resource, permission.action, permission.scope.to_scope()
    )
    response = PermissionResponse.from_model(db_permission)

    await create_audit_log(
        db,
        AuditContext(request),
        action="grant",
        resource_type="role",
        resource_id=role_id,
        details={"permission_id": db_permission.id, **permission.model_dump()},
    )
    return response


@router.put("/roles/{role_id}/permissions", response_model=List[PermissionResponse])
async def replace_permissions(
    role_id: str,
    payload: RolePermissionsReplace,
    request: Request,
    db: AsyncSession = Depends(get_db),
    store: PermissionStore = Depends(get_permission_store),
):
    """Replace every permission on a role."""
    grants = [PermissionKey(p.resource, p.action, p.scope.to_scope()) for p in payload.permissions]
    permissions = await store.set_role_permissions(role_id, grants)
    response = [PermissionResponse.from_model(p) for p in permissions]

    await create_audit_log(
        db,
        AuditContext(request),
        action="replace_permissions",
        resource_type="role",
        resource_id=role_id,
        details={"count": len(grants)},
    )
    return response


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission(
    role_id: str,
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    store: PermissionStore = Depends(get_permission_store),
):
    """Revoke a permission from a role."""
    await store.remove_permission(role_id, permission_id)

    await create_audit_log(
        db,
        AuditContext(request),
        action="revoke",
        resource_type="role",
        resource_id=role_id,
        details={"permission_id": permission_id},
    )
    return None


# ============================================================================
# Permission Overview Routes
# ============================================================================

@router.get("/", response_model=List[PermissionWithRole])
async def list_permissions(
    resource: Optional[str] = None,
    action: Optional[str] = None,
    store: PermissionStore = Depends(get_permission_store),
):
    """List every permission across all roles, with optional filtering."""
    rows = await store.list_all_permissions()
    return [
        PermissionWithRole(**PermissionResponse.from_model(p).model_dump(), role_name=role.name)
        for p, role in rows
        if (resource is None or p.resource == resource) and (action is None or p.action == action)
    ]


@router.get("/matrix", response_model=PermissionMatrixResponse)
async def get_permission_matrix(
    registry: RoleRegistry = Depends(get_role_registry),
    catalog: StaticCatalog = Depends(get_catalog),
):
    """Roles x (resource, action, scope) grid of the stored permissions."""
    roles = await registry.list_roles()
    baseline = index_roles(RoleSnapshot.from_model(r) for r in roles)
    return PermissionMatrixResponse.from_view(build_matrix(catalog, baseline))


@router.post("/bulk", response_model=BulkPermissionResult)
@limiter.limit(config.APPLY_RATE_LIMIT)
async def bulk_update_permissions(
    payload: BulkPermissionRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    backend: DatabasePermissionBackend = Depends(get_permission_backend),
):
    """
    Run add/remove operations in order, each in its own transaction.

    A failing operation is reported in its result entry and does not stop
    the remaining operations.
    """
    results: List[BulkOperationResult] = []
    for index, op in enumerate(payload.operations):
        scope = op.permission.scope.to_scope()
        try:
            if op.op == "add":
                await backend.add_permission(op.role_id, op.permission.resource, op.permission.action, scope)
            else:
                await backend.remove_matching_permission(
                    op.role_id, PermissionKey(op.permission.resource, op.permission.action, scope)
                )
        except RbacError as e:
            results.append(BulkOperationResult(index=index, success=False, error=e.message, error_code=e.code))
            continue
        results.append(BulkOperationResult(index=index, success=True))

    succeeded = sum(1 for r in results if r.success)
    failed = len(results) - succeeded
    if failed:
        log.warning(f"Bulk permission update: {failed} of {len(results)} operations failed")

    await create_audit_log(
        db,
        AuditContext(request),
        action="bulk_update",
        resource_type="permission",
        details={
            "operations": [
                {
                    "op": op.op,
                    "role_id": op.role_id,
                    "resource": op.permission.resource,
                    "action": op.permission.action,
                    "scope": scope_to_dict(op.permission.scope.to_scope()),
                }
                for op in payload.operations
            ],
            "succeeded": succeeded,
            "failed": failed,
        },
    )

    return BulkPermissionResult(total=len(results), succeeded=succeeded, failed=failed, results=results)


# ============================================================================
# Audit Log Routes
# ============================================================================

@audit_router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    actor: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """List audit logs, newest first, with optional filtering."""
    stmt = select(AuditLog)

    if actor:
        stmt = stmt.where(AuditLog.actor == actor)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    skip = (page - 1) * page_size
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(page_size)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + page_size - 1) // page_size

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )
