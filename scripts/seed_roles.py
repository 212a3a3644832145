"""
Seed script to create the tables and the built-in system roles.

Safe to re-run: roles that already exist are left untouched.

Usage:
    python -m scripts.seed_roles
"""
import asyncio

from rbac_admin.core.database.engine import AsyncSessionLocal, init_db
from rbac_admin.features.permissions.registry import SYSTEM_ROLES, RoleRegistry
from rbac_admin.utils import get_logger


log = get_logger(__name__)


async def main():
    """Main seeding function."""
    log.info("Starting system role seeding...")

    try:
        await init_db(seed=True)

        async with AsyncSessionLocal() as db:
            registry = RoleRegistry(db)
            log.info("System roles:")
            for role_id, name, _display_name, description, _grants in SYSTEM_ROLES:
                role = await registry.get_role(role_id)
                log.info(f"  - {name}: {description} ({len(role.permissions)} permissions)")
    except Exception as e:
        log.error(f"Error seeding roles: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    asyncio.run(main())
