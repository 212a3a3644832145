import os
import tempfile

# Point the service at a throwaway database before anything imports config
_TMP_DIR = tempfile.mkdtemp(prefix="rbac-admin-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/test.db"
os.environ["APPLY_RATE_LIMIT"] = "10000/minute"
os.environ["STAGING_RATE_LIMIT"] = "10000/minute"
os.environ.pop("CATALOG_PATH", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from rbac_admin.core.database.base import Base  # noqa: E402
from rbac_admin.core.database.engine import AsyncSessionLocal, engine, register_models  # noqa: E402
from rbac_admin.features.catalog.catalog import default_catalog  # noqa: E402
from rbac_admin.features.permissions.registry import ensure_system_roles  # noqa: E402
from rbac_admin.features.users.models import User  # noqa: E402


ADMIN_ROLE_ID = "00000000000000000000000001"
VIEWER_ROLE_ID = "00000000000000000000000003"


@pytest_asyncio.fixture
async def database():
    """Fresh schema with the system roles seeded."""
    register_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        await ensure_system_roles(session)
        await session.commit()
    yield


@pytest_asyncio.fixture
async def db(database):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def catalog():
    return default_catalog()


@pytest_asyncio.fixture
async def users(database):
    """Two active users and one inactive one."""
    async with AsyncSessionLocal() as session:
        rows = [
            User(username="alice", email="alice@example.com", display_name="Alice"),
            User(username="bob", email="bob@example.com", display_name="Bob"),
            User(username="carol", email="carol@example.com", display_name="Carol", is_active=False),
        ]
        session.add_all(rows)
        await session.commit()
        return {u.username: u.id for u in rows}


@pytest_asyncio.fixture
async def client(database):
    from rbac_admin.main import app, init_state

    # New staging session manager per test
    init_state(app)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
