"""
Role registry: create, read, update and delete roles.

System roles are seeded with fixed identifiers and are immutable through
this registry. Methods flush but never commit; the caller owns the
transaction (routes commit explicitly, the staging backend commits per
operation).
"""
import re
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core.errors import ConflictError, NotFoundError, ProtectedResourceError, ValidationError
from rbac_admin.features.permissions.models import Permission, Role, user_roles
from rbac_admin.features.permissions.domain import ALL, scope_to_columns
from rbac_admin.utils import get_logger


log = get_logger(__name__)

ROLE_NAME_MAX_LENGTH = 50
ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")


def normalize_role_name(name: Optional[str]) -> str:
    """
    Trim and lower-case a role name, then validate the token format.

    Raises:
        ValidationError: empty, too long, or not a lowercase token
    """
    normalized = (name or "").strip().lower()
    if not normalized:
        raise ValidationError("Role name must not be empty", details={"field": "name"})
    if len(normalized) > ROLE_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Role name must be at most {ROLE_NAME_MAX_LENGTH} characters",
            details={"field": "name"},
        )
    if not ROLE_NAME_PATTERN.match(normalized):
        raise ValidationError(
            "Role name must start with a letter and contain only lowercase letters, digits, "
            "underscores and hyphens",
            details={"field": "name", "value": name},
        )
    return normalized


# ============================================================================
# System roles
# ============================================================================

# (id, name, display name, description, [(resource, action)]) -- all scope "all"
SYSTEM_ROLES = [
    (
        "00000000000000000000000001", "admin", "Administrator",
        "Full system access with all permissions",
        [
            ("nodes", "admin"), ("groups", "admin"), ("reports", "admin"), ("facts", "admin"),
            ("users", "admin"), ("roles", "admin"), ("settings", "admin"), ("audit_logs", "admin"),
            ("facter_templates", "admin"), ("api_keys", "admin"),
        ],
    ),
    (
        "00000000000000000000000002", "operator", "Operator",
        "Day-to-day operations access",
        [
            ("nodes", "read"), ("nodes", "classify"),
            ("groups", "read"), ("groups", "create"), ("groups", "update"),
            ("reports", "read"), ("facts", "read"), ("settings", "read"),
        ],
    ),
    (
        "00000000000000000000000003", "viewer", "Viewer",
        "Read-only access to all resources",
        [("nodes", "read"), ("groups", "read"), ("reports", "read"), ("facts", "read")],
    ),
    (
        "00000000000000000000000004", "group_admin", "Group Administrator",
        "Full access to assigned node groups",
        [("groups", "admin"), ("nodes", "read"), ("nodes", "classify")],
    ),
    (
        "00000000000000000000000005", "auditor", "Auditor",
        "Read access with audit log visibility",
        [
            ("nodes", "read"), ("groups", "read"), ("reports", "read"), ("reports", "export"),
            ("facts", "read"), ("audit_logs", "read"),
        ],
    ),
]


async def ensure_system_roles(db: AsyncSession) -> int:
    """
    Insert any missing system role with its default permissions.

    Existing system roles are left untouched. Grants are stored verbatim,
    bypassing catalog validation, since system defaults predate any
    custom catalog. Returns the number of roles created.
    """
    created = 0
    scope_type, scope_value = scope_to_columns(ALL)
    for role_id, name, display_name, description, grants in SYSTEM_ROLES:
        if await db.get(Role, role_id) is not None:
            continue
        role = Role(
            id=role_id,
            name=name,
            display_name=display_name,
            description=description,
            is_system=True,
            permissions=[
                Permission(resource=resource, action=action, scope_type=scope_type, scope_value=scope_value)
                for resource, action in grants
            ],
        )
        db.add(role)
        created += 1
    await db.flush()
    return created


# ============================================================================
# Registry
# ============================================================================

class RoleRegistry:
    """Role CRUD over one AsyncSession, enforcing system-role immutability."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_role(self, role_id: str) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role not found", details={"role_id": role_id})
        return role

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        stmt = select(Role).where(func.lower(Role.name) == name.strip().lower())
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_roles(self) -> List[Role]:
        result = await self.db.execute(select(Role))
        return list(result.scalars().all())

    async def create_role(
        self,
        name: str,
        display_name: str,
        description: Optional[str] = None,
    ) -> Role:
        """
        Create a non-system role with no permissions.

        Raises:
            ValidationError: bad name format or empty display name
            ConflictError: name already taken (lookup or unique constraint)
        """
        normalized = normalize_role_name(name)
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Display name must not be empty", details={"field": "display_name"})

        if await self.get_role_by_name(normalized) is not None:
            raise ConflictError(f"Role with name '{normalized}' already exists", details={"name": normalized})

        role = Role(
            name=normalized,
            display_name=display_name,
            description=description,
            is_system=False,
            permissions=[],
        )
        self.db.add(role)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Role with name '{normalized}' already exists", details={"name": normalized})
        await self.db.refresh(role)

        log.info(f"Created role {role.id} ({role.name})")
        return role

    async def update_role(
        self,
        role_id: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        """Update display name and/or description of a non-system role."""
        role = await self.get_role(role_id)
        if role.is_system:
            raise ProtectedResourceError("Cannot modify system roles", details={"role_id": role_id})

        if display_name is not None:
            display_name = display_name.strip()
            if not display_name:
                raise ValidationError("Display name must not be empty", details={"field": "display_name"})
            role.display_name = display_name
        if description is not None:
            role.description = description

        await self.db.flush()
        await self.db.refresh(role)
        log.info(f"Updated role {role.id} ({role.name})")
        return role

    async def delete_role(self, role_id: str) -> None:
        """
        Delete a non-system role, its permissions and its user assignments.

        Open staging sessions are not told here; the caller does that once
        the deletion is committed.

        Raises:
            NotFoundError: role does not exist
            ProtectedResourceError: role is a system role
        """
        role = await self.get_role(role_id)
        if role.is_system:
            raise ProtectedResourceError("Cannot delete system roles", details={"role_id": role_id})

        role_name = role.name
        await self.db.execute(delete(user_roles).where(user_roles.c.role_id == role_id))
        await self.db.delete(role)
        await self.db.flush()
        log.info(f"Deleted role {role_id} ({role_name})")
