"""
Database-backed PermissionBackend for staging sessions.

Every operation runs in its own AsyncSession and commits on its own, so
the concurrent fan-out of an apply never shares a session between tasks.
"""
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbac_admin.features.catalog.catalog import StaticCatalog
from rbac_admin.features.permissions.domain import PermissionKey, PermissionSnapshot, RoleSnapshot, Scope
from rbac_admin.features.permissions.registry import RoleRegistry
from rbac_admin.features.permissions.store import PermissionStore


class DatabasePermissionBackend:
    """PermissionBackend over the role registry and permission store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], catalog: StaticCatalog):
        self.session_factory = session_factory
        self.catalog = catalog

    async def list_roles(self) -> List[RoleSnapshot]:
        async with self.session_factory() as db:
            roles = await RoleRegistry(db).list_roles()
            return [RoleSnapshot.from_model(role) for role in roles]

    async def add_permission(self, role_id: str, resource: str, action: str, scope: Scope) -> PermissionSnapshot:
        async with self.session_factory() as db:
            permission = await PermissionStore(db, self.catalog).add_permission(role_id, resource, action, scope)
            await db.commit()
            return PermissionSnapshot(permission.id, permission.resource, permission.action, permission.scope)

    async def remove_permission(self, role_id: str, permission_id: str) -> None:
        async with self.session_factory() as db:
            await PermissionStore(db, self.catalog).remove_permission(role_id, permission_id)
            await db.commit()

    async def remove_matching_permission(self, role_id: str, key: PermissionKey) -> None:
        """Revoke the permission matching an exact (resource, action, scope) tuple."""
        async with self.session_factory() as db:
            store = PermissionStore(db, self.catalog)
            permission = await store.find_permission(role_id, key)
            await store.remove_permission(role_id, permission.id)
            await db.commit()
