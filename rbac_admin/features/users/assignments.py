"""
User-role assignment operations.

Like the role registry, methods flush and leave the commit to the
caller.
"""
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core.errors import NotFoundError
from rbac_admin.features.permissions.models import Role, user_roles
from rbac_admin.features.permissions.registry import RoleRegistry
from rbac_admin.features.users.models import User
from rbac_admin.utils import get_logger


log = get_logger(__name__)


class UserRoleAssignments:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.roles = RoleRegistry(db)

    async def get_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user

    async def list_users(self, role_id: Optional[str] = None) -> List[User]:
        """Active users, optionally only those holding ``role_id``."""
        stmt = select(User).where(User.is_active.is_(True)).order_by(User.username)
        if role_id is not None:
            await self.roles.get_role(role_id)
            stmt = stmt.join(user_roles, user_roles.c.user_id == User.id).where(user_roles.c.role_id == role_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_user_roles(self, user_id: str) -> List[Role]:
        user = await self.get_user(user_id)
        return list(user.roles)

    async def assign_roles(self, user_id: str, role_ids: Sequence[str]) -> User:
        """Replace every role on a user. Unknown role ids fail before any change."""
        user = await self.get_user(user_id)
        roles = []
        for role_id in dict.fromkeys(role_ids):
            roles.append(await self.roles.get_role(role_id))

        user.roles = roles
        await self.db.flush()
        log.info(f"Assigned roles {[r.name for r in roles]} to user {user_id}")
        return user

    async def add_role(self, user_id: str, role_id: str) -> User:
        """Grant one role to a user; a no-op if already held."""
        user = await self.get_user(user_id)
        role = await self.roles.get_role(role_id)
        if role not in user.roles:
            user.roles.append(role)
            await self.db.flush()
            log.info(f"Added role {role.name} to user {user_id}")
        return user

    async def remove_role(self, user_id: str, role_id: str) -> User:
        """
        Take one role away from a user.

        Raises:
            NotFoundError: unknown user or role, or the user does not hold it
        """
        user = await self.get_user(user_id)
        role = await self.roles.get_role(role_id)
        if role not in user.roles:
            raise NotFoundError(
                "Role is not assigned to user",
                details={"user_id": user_id, "role_id": role_id},
            )
        user.roles.remove(role)
        await self.db.flush()
        log.info(f"Removed role {role.name} from user {user_id}")
        return user
