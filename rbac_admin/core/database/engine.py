"""
Database engine configuration and session management.

The role/permission tables are the system of record for the
administration core. Default backend is SQLite through aiosqlite; any
async SQLAlchemy URL can be supplied through DATABASE_URL.
"""
from collections.abc import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from rbac_admin.core import config
from rbac_admin.utils import get_logger


log = get_logger(__name__)

engine = create_async_engine(
    config.SQLALCHEMY_DATABASE_URL,
    # NullPool for SQLite to avoid connection pool issues across event loops
    poolclass=NullPool if config.SQLALCHEMY_DATABASE_URL.startswith("sqlite") else None,
    echo=False,
    future=True,
)

if config.SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record):
        # SQLite leaves ON DELETE CASCADE inert unless asked per connection
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage in FastAPI routes:
        @router.get("/roles")
        async def list_roles(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def register_models() -> None:
    """Import every model module so its tables land on Base.metadata."""
    from rbac_admin.features.permissions.models import Role, Permission, AuditLog  # noqa: F401
    from rbac_admin.features.users.models import User  # noqa: F401


async def init_db(seed: bool | None = None) -> None:
    """
    Create all tables and, unless disabled, seed the built-in system roles.

    Called from the application startup hook and from scripts/seed_roles.py.
    """
    from rbac_admin.core.database.base import Base
    from rbac_admin.features.permissions.registry import ensure_system_roles

    register_models()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if seed is None:
        seed = config.SEED_SYSTEM_ROLES
    if seed:
        async with AsyncSessionLocal() as session:
            created = await ensure_system_roles(session)
            await session.commit()
        if created:
            log.info("Seeded %d system roles", created)
