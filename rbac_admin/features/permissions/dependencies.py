"""
FastAPI dependencies and helpers for role/permission administration.

Implements:
- Registry/store providers bound to the request's database session
- Access to the application's staging session manager
- Audit logging helpers
"""
from typing import Any, Dict, Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core.database.engine import get_db
from rbac_admin.features.catalog.catalog import StaticCatalog, get_catalog
from rbac_admin.features.permissions.models import AuditLog
from rbac_admin.features.permissions.registry import RoleRegistry
from rbac_admin.features.permissions.store import PermissionStore
from rbac_admin.features.staging.backend import DatabasePermissionBackend
from rbac_admin.features.staging.manager import StagingSessionManager
from rbac_admin.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Providers
# ============================================================================

def get_staging_manager(request: Request) -> StagingSessionManager:
    """The StagingSessionManager created at application startup."""
    return request.app.state.staging_sessions


def get_permission_backend(request: Request) -> DatabasePermissionBackend:
    """Per-operation-session backend shared by staging sessions and bulk requests."""
    return request.app.state.permission_backend


def get_role_registry(db: AsyncSession = Depends(get_db)) -> RoleRegistry:
    return RoleRegistry(db)


def get_permission_store(
    db: AsyncSession = Depends(get_db),
    catalog: StaticCatalog = Depends(get_catalog),
) -> PermissionStore:
    return PermissionStore(db, catalog)


class AuditContext:
    """Who is calling and from where, captured once per request."""

    def __init__(self, request: Request):
        self.actor: Optional[str] = request.headers.get("x-actor")
        self.ip_address: Optional[str] = request.client.host if request.client else None
        self.user_agent: Optional[str] = request.headers.get("user-agent")


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    context: AuditContext,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Create and commit an audit log entry.

    Args:
        db: Database session
        context: Actor, client IP and user agent of the request
        action: Action performed (e.g., "create", "delete", "grant", "apply")
        resource_type: Type of resource (e.g., "role", "permission", "user")
        resource_id: ID of the resource
        details: Additional details

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        actor=context.actor,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )

    db.add(audit_log)
    await db.commit()

    log.info(f"Audit: actor={context.actor} action={action} resource={resource_type}:{resource_id}")

    return audit_log
