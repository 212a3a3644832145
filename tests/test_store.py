import pytest

from rbac_admin.core.errors import ConflictError, NotFoundError, ProtectedResourceError, ValidationError
from rbac_admin.features.permissions.domain import ALL, InstanceScope, PermissionKey
from rbac_admin.features.permissions.registry import RoleRegistry
from rbac_admin.features.permissions.store import PermissionStore
from tests.conftest import ADMIN_ROLE_ID, VIEWER_ROLE_ID


@pytest.fixture
async def role(db):
    role = await RoleRegistry(db).create_role("deployer", "Deployer")
    await db.commit()
    return role


@pytest.fixture
def store(db, catalog):
    return PermissionStore(db, catalog)


async def test_add_permission(store, role, db):
    permission = await store.add_permission(role.id, "nodes", "read")
    await db.commit()

    assert permission.role_id == role.id
    assert permission.scope == ALL
    assert [p.key for p in await store.list_permissions(role.id)] == [PermissionKey("nodes", "read", ALL)]


async def test_instance_and_all_scopes_are_distinct(store, role):
    await store.add_permission(role.id, "groups", "update")
    await store.add_permission(role.id, "groups", "update", InstanceScope("web"))
    await store.add_permission(role.id, "groups", "update", InstanceScope("db"))

    scopes = {str(p.scope) for p in await store.list_permissions(role.id)}
    assert scopes == {"all", "instance:web", "instance:db"}


async def test_duplicate_grant_conflicts(store, role):
    await store.add_permission(role.id, "nodes", "read", InstanceScope("web"))
    with pytest.raises(ConflictError):
        await store.add_permission(role.id, "nodes", "read", InstanceScope("web"))


async def test_add_permission_unknown_role(store):
    with pytest.raises(NotFoundError):
        await store.add_permission("01HZZZZZZZZZZZZZZZZZZZZZZZ", "nodes", "read")


async def test_add_permission_unknown_resource(store, role):
    with pytest.raises(NotFoundError):
        await store.add_permission(role.id, "spaceships", "read")


async def test_add_permission_unsupported_action(store, role):
    with pytest.raises(ValidationError):
        await store.add_permission(role.id, "nodes", "delete")


async def test_system_role_checked_before_catalog(store):
    with pytest.raises(ProtectedResourceError):
        await store.add_permission(VIEWER_ROLE_ID, "spaceships", "fly")


async def test_remove_permission(store, role, db):
    permission = await store.add_permission(role.id, "nodes", "read")
    await db.commit()

    await store.remove_permission(role.id, permission.id)
    await db.commit()

    assert await store.list_permissions(role.id) == []


async def test_remove_missing_permission(store, role):
    with pytest.raises(NotFoundError):
        await store.remove_permission(role.id, "01HZZZZZZZZZZZZZZZZZZZZZZZ")


async def test_remove_permission_from_system_role(store, db):
    admin = await RoleRegistry(db).get_role(ADMIN_ROLE_ID)
    with pytest.raises(ProtectedResourceError):
        await store.remove_permission(ADMIN_ROLE_ID, admin.permissions[0].id)


async def test_find_permission(store, role):
    added = await store.add_permission(role.id, "reports", "export")
    found = await store.find_permission(role.id, PermissionKey("reports", "export", ALL))
    assert found.id == added.id
    with pytest.raises(NotFoundError):
        await store.find_permission(role.id, PermissionKey("reports", "read", ALL))


async def test_set_role_permissions_replaces(store, role, db):
    await store.add_permission(role.id, "nodes", "read")
    await db.commit()

    result = await store.set_role_permissions(role.id, [
        PermissionKey("nodes", "read", ALL),
        PermissionKey("reports", "export", InstanceScope("weekly")),
    ])
    await db.commit()

    assert {p.key for p in result} == {
        PermissionKey("nodes", "read", ALL),
        PermissionKey("reports", "export", InstanceScope("weekly")),
    }


async def test_set_role_permissions_rejects_bad_batch_untouched(store, role, db):
    await store.add_permission(role.id, "nodes", "read")
    await db.commit()

    with pytest.raises(ConflictError):
        await store.set_role_permissions(role.id, [
            PermissionKey("facts", "read", ALL),
            PermissionKey("facts", "read", ALL),
        ])
    with pytest.raises(ValidationError):
        await store.set_role_permissions(role.id, [PermissionKey("nodes", "delete", ALL)])

    assert [p.key for p in await store.list_permissions(role.id)] == [PermissionKey("nodes", "read", ALL)]


async def test_list_all_permissions_pairs_roles(store, role):
    await store.add_permission(role.id, "nodes", "read")
    rows = await store.list_all_permissions()
    assert ("deployer", "nodes", "read") in {(r.name, p.resource, p.action) for p, r in rows}
    assert "viewer" in {r.name for _, r in rows}
