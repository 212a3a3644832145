"""
Per-role permission store.

Adds, removes and replaces the (resource, action, scope) grants held by
a role. Every mutation checks, in order: the role exists, the role is
not a system role, the grant is valid against the catalog, and the
grant is not a duplicate.
"""
from typing import List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core.errors import ConflictError, NotFoundError, ProtectedResourceError
from rbac_admin.features.catalog.catalog import StaticCatalog
from rbac_admin.features.permissions.domain import ALL, PermissionKey, Scope, scope_to_columns
from rbac_admin.features.permissions.models import Permission, Role
from rbac_admin.features.permissions.registry import RoleRegistry
from rbac_admin.utils import get_logger


log = get_logger(__name__)


class PermissionStore:
    """Permission CRUD scoped to a role."""

    def __init__(self, db: AsyncSession, catalog: StaticCatalog):
        self.db = db
        self.catalog = catalog
        self.roles = RoleRegistry(db)

    async def _mutable_role(self, role_id: str) -> Role:
        role = await self.roles.get_role(role_id)
        if role.is_system:
            raise ProtectedResourceError(
                "Cannot modify system role permissions",
                details={"role_id": role_id, "role": role.name},
            )
        return role

    async def list_permissions(self, role_id: str) -> List[Permission]:
        role = await self.roles.get_role(role_id)
        return list(role.permissions)

    async def list_all_permissions(self) -> List[Tuple[Permission, Role]]:
        """Every permission paired with its owning role."""
        stmt = (
            select(Permission, Role)
            .join(Role, Permission.role_id == Role.id)
            .order_by(Role.name, Permission.resource, Permission.action)
        )
        result = await self.db.execute(stmt)
        return [(permission, role) for permission, role in result.all()]

    async def add_permission(
        self,
        role_id: str,
        resource: str,
        action: str,
        scope: Scope = ALL,
    ) -> Permission:
        """
        Grant (resource, action, scope) to a role.

        Raises:
            NotFoundError: role or resource does not exist
            ProtectedResourceError: role is a system role
            ValidationError: action not supported by the resource
            ConflictError: the role already holds this exact grant
        """
        role = await self._mutable_role(role_id)
        self.catalog.validate(resource, action)

        key = PermissionKey(resource, action, scope)
        if any(p.key == key for p in role.permissions):
            raise ConflictError(
                f"Role '{role.name}' already has permission {key}",
                details={"role_id": role_id, "resource": resource, "action": action},
            )

        scope_type, scope_value = scope_to_columns(scope)
        permission = Permission(
            resource=resource,
            action=action,
            scope_type=scope_type,
            scope_value=scope_value,
        )
        role.permissions.append(permission)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                f"Role '{role.name}' already has permission {key}",
                details={"role_id": role_id, "resource": resource, "action": action},
            )
        await self.db.refresh(permission)

        log.info(f"Granted {key} to role {role.name} (permission {permission.id})")
        return permission

    async def remove_permission(self, role_id: str, permission_id: str) -> None:
        """
        Revoke one permission from a role.

        Raises:
            NotFoundError: role missing, or the permission is not on that role
            ProtectedResourceError: role is a system role
        """
        role = await self._mutable_role(role_id)
        permission = next((p for p in role.permissions if p.id == permission_id), None)
        if permission is None:
            raise NotFoundError(
                "Permission not found on role",
                details={"role_id": role_id, "permission_id": permission_id},
            )

        role.permissions.remove(permission)
        await self.db.flush()
        log.info(f"Revoked {permission.key} from role {role.name} (permission {permission_id})")

    async def find_permission(self, role_id: str, key: PermissionKey) -> Permission:
        """Look up a role's permission by its exact (resource, action, scope) tuple."""
        role = await self.roles.get_role(role_id)
        for permission in role.permissions:
            if permission.key == key:
                return permission
        raise NotFoundError(
            f"Role '{role.name}' has no permission {key}",
            details={"role_id": role_id, "resource": key.resource, "action": key.action},
        )

    async def set_role_permissions(self, role_id: str, grants: Sequence[PermissionKey]) -> List[Permission]:
        """
        Replace every permission on a role with the given grants.

        All grants are validated before anything is removed, so a bad entry
        leaves the role untouched.
        """
        role = await self._mutable_role(role_id)

        seen = set()
        for key in grants:
            self.catalog.validate(key.resource, key.action)
            if key in seen:
                raise ConflictError(
                    f"Duplicate permission {key} in request",
                    details={"resource": key.resource, "action": key.action},
                )
            seen.add(key)

        role.permissions.clear()
        # Flush the deletes first so re-granted tuples do not trip the unique constraint
        await self.db.flush()

        for key in grants:
            scope_type, scope_value = scope_to_columns(key.scope)
            role.permissions.append(
                Permission(
                    resource=key.resource,
                    action=key.action,
                    scope_type=scope_type,
                    scope_value=scope_value,
                )
            )
        await self.db.flush()
        await self.db.refresh(role)

        log.info(f"Replaced permissions on role {role.name} ({len(grants)} grants)")
        return list(role.permissions)
