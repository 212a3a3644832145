import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.conftest import ADMIN_ROLE_ID, VIEWER_ROLE_ID


async def create_role(client, name="deployer", **extra):
    response = await client.post(
        "/permissions/roles",
        json={"name": name, "display_name": name.title(), **extra},
        headers={"X-Actor": "ops@example.com"},
    )
    assert response.status_code == 201, response.text
    return response.json()


async def grant(client, role_id, resource, action, scope=None):
    body = {"resource": resource, "action": action}
    if scope is not None:
        body["scope"] = scope
    return await client.post(f"/permissions/roles/{role_id}/permissions", json=body)


# ============================================================================
# Service shell
# ============================================================================

async def test_root_and_health(client):
    assert (await client.get("/health")).json() == {"status": "healthy"}
    assert (await client.get("/")).json()["status"] == "online"


async def test_catalog_routes(client):
    resources = (await client.get("/catalog/resources")).json()
    assert resources[0]["name"] == "nodes"
    assert resources[0]["actions"] == ["read", "classify"]

    assert (await client.get("/catalog/resources/spaceships")).status_code == 404
    assert "admin" in {a["name"] for a in (await client.get("/catalog/actions")).json()}


# ============================================================================
# Roles
# ============================================================================

async def test_create_and_get_role(client):
    role = await create_role(client, "Deployer")
    assert role["name"] == "deployer"
    assert role["is_system"] is False
    assert role["permissions"] == []

    fetched = (await client.get(f"/permissions/roles/{role['id']}")).json()
    assert fetched["display_name"] == "Deployer"


async def test_create_role_errors(client):
    await create_role(client)

    duplicate = await client.post("/permissions/roles", json={"name": "DEPLOYER", "display_name": "Again"})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "conflict"

    bad_name = await client.post("/permissions/roles", json={"name": "9lives", "display_name": "Cat"})
    assert bad_name.status_code == 400
    assert bad_name.json()["error"] == "validation_error"

    missing = await client.post("/permissions/roles", json={"name": "ops"})
    assert missing.status_code == 400
    assert "display_name" in missing.json()


async def test_list_roles_sorted_and_filtered(client):
    await create_role(client, "zeta")
    await create_role(client, "alpha")

    names = [r["name"] for r in (await client.get("/permissions/roles")).json()]
    assert names == sorted(names)
    assert {"admin", "viewer", "alpha", "zeta"} <= set(names)

    custom = (await client.get("/permissions/roles", params={"is_system": "false"})).json()
    assert [r["name"] for r in custom] == ["alpha", "zeta"]


async def test_update_role(client):
    role = await create_role(client)
    response = await client.put(f"/permissions/roles/{role['id']}", json={"description": "Ships builds"})
    assert response.status_code == 200
    assert response.json()["description"] == "Ships builds"


async def test_system_roles_are_protected(client):
    update = await client.put(f"/permissions/roles/{VIEWER_ROLE_ID}", json={"display_name": "Watcher"})
    assert update.status_code == 403
    assert update.json()["error"] == "protected_resource"

    assert (await client.delete(f"/permissions/roles/{ADMIN_ROLE_ID}")).status_code == 403
    assert (await grant(client, VIEWER_ROLE_ID, "reports", "export")).status_code == 403


async def test_delete_role(client):
    role = await create_role(client)
    assert (await client.delete(f"/permissions/roles/{role['id']}")).status_code == 204
    assert (await client.get(f"/permissions/roles/{role['id']}")).status_code == 404
    assert (await client.delete(f"/permissions/roles/{role['id']}")).status_code == 404


# ============================================================================
# Permissions
# ============================================================================

async def test_grant_and_revoke_permission(client):
    role = await create_role(client)

    response = await grant(client, role["id"], "nodes", "READ")
    assert response.status_code == 201
    permission = response.json()
    assert permission["action"] == "read"
    assert permission["scope"] == {"type": "all"}

    scoped = await grant(client, role["id"], "nodes", "read", {"type": "instance", "value": "web-1"})
    assert scoped.status_code == 201

    listed = (await client.get(f"/permissions/roles/{role['id']}/permissions")).json()
    assert len(listed) == 2

    removed = await client.delete(f"/permissions/roles/{role['id']}/permissions/{permission['id']}")
    assert removed.status_code == 204
    listed = (await client.get(f"/permissions/roles/{role['id']}/permissions")).json()
    assert [p["scope"] for p in listed] == [{"type": "instance", "value": "web-1"}]


async def test_grant_errors(client):
    role = await create_role(client)
    await grant(client, role["id"], "nodes", "read")

    assert (await grant(client, role["id"], "nodes", "read")).status_code == 409
    assert (await grant(client, role["id"], "spaceships", "read")).status_code == 404
    assert (await grant(client, role["id"], "nodes", "delete")).status_code == 400
    assert (await grant(client, role["id"], "nodes", "read", {"type": "instance", "value": "  "})).status_code == 400
    assert (await grant(client, role["id"], "nodes", "read", {"type": "group"})).status_code == 400
    assert (await grant(client, "01HZZZZZZZZZZZZZZZZZZZZZZZ", "nodes", "read")).status_code == 404


async def test_replace_permissions(client):
    role = await create_role(client)
    await grant(client, role["id"], "nodes", "read")

    response = await client.put(
        f"/permissions/roles/{role['id']}/permissions",
        json={"permissions": [
            {"resource": "reports", "action": "export"},
            {"resource": "groups", "action": "update", "scope": {"type": "instance", "value": "web"}},
        ]},
    )

    assert response.status_code == 200
    assert {(p["resource"], p["action"]) for p in response.json()} == {("reports", "export"), ("groups", "update")}


async def test_list_all_permissions(client):
    role = await create_role(client)
    await grant(client, role["id"], "facts", "generate")

    rows = (await client.get("/permissions/", params={"resource": "facts"})).json()
    assert ("deployer", "generate") in {(r["role_name"], r["action"]) for r in rows}
    assert all(r["resource"] == "facts" for r in rows)


async def test_bulk_reports_each_operation(client):
    role = await create_role(client)
    await grant(client, role["id"], "nodes", "read")

    response = await client.post("/permissions/bulk", json={"operations": [
        {"op": "add", "role_id": role["id"], "permission": {"resource": "reports", "action": "read"}},
        {"op": "add", "role_id": role["id"], "permission": {"resource": "nodes", "action": "read"}},
        {"op": "remove", "role_id": role["id"], "permission": {"resource": "nodes", "action": "read"}},
        {"op": "add", "role_id": VIEWER_ROLE_ID, "permission": {"resource": "reports", "action": "export"}},
    ]})

    assert response.status_code == 200
    body = response.json()
    assert (body["total"], body["succeeded"], body["failed"]) == (4, 2, 2)
    assert [r["error_code"] for r in body["results"]] == [None, "conflict", None, "protected_resource"]

    listed = (await client.get(f"/permissions/roles/{role['id']}/permissions")).json()
    assert [(p["resource"], p["action"]) for p in listed] == [("reports", "read")]


async def test_permission_matrix(client):
    role = await create_role(client)
    await grant(client, role["id"], "nodes", "classify")

    matrix = (await client.get("/permissions/matrix")).json()
    columns = {c["role"]["name"]: c for c in matrix["columns"]}
    assert {"admin", "viewer", "deployer"} <= set(columns)

    cells = {(c["resource"], c["action"]): c for c in columns["deployer"]["cells"]}
    assert cells[("nodes", "classify")]["granted"] is True
    assert cells[("nodes", "read")]["granted"] is False
    assert not any(c["pending"] for c in cells.values())


# ============================================================================
# Staging
# ============================================================================

async def test_staged_edit_and_apply(client):
    role = await create_role(client)
    await grant(client, role["id"], "nodes", "read")

    session = (await client.post("/staging/")).json()
    assert session["status"] == "clean"
    sid = session["id"]

    toggle = await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "nodes", "action": "classify"})
    assert toggle.json() == {"staged": True, "state": "granted", "pending": True, "status": "dirty"}
    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "nodes", "action": "read"})

    cell = (await client.get(
        f"/staging/{sid}/cells",
        params={"role_id": role["id"], "resource": "nodes", "action": "read"},
    )).json()
    assert cell["state"] == "not_granted"
    assert cell["pending"] is True

    # Nothing reaches the database before apply
    listed = (await client.get(f"/permissions/roles/{role['id']}/permissions")).json()
    assert [p["action"] for p in listed] == ["read"]

    report = (await client.post(f"/staging/{sid}/apply", headers={"X-Actor": "ops@example.com"})).json()
    assert (report["total"], report["succeeded"], report["failed"], report["status"]) == (2, 2, 0, "clean")

    listed = (await client.get(f"/permissions/roles/{role['id']}/permissions")).json()
    assert [p["action"] for p in listed] == ["classify"]

    view = (await client.get(f"/staging/{sid}")).json()
    assert view["pending"] == []
    assert len(view["last_outcomes"]) == 2


async def test_staged_partial_failure(client):
    role = await create_role(client)
    sid = (await client.post("/staging/")).json()["id"]
    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "reports", "action": "read"})
    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "facts", "action": "read"})

    # Someone else grants one of the cells before apply
    await grant(client, role["id"], "facts", "read")

    report = (await client.post(f"/staging/{sid}/apply")).json()

    assert (report["succeeded"], report["failed"], report["status"]) == (1, 1, "clean")
    failed = [o for o in report["outcomes"] if not o["succeeded"]]
    assert failed[0]["error_code"] == "conflict"
    assert failed[0]["edit"]["resource"] == "facts"


async def test_apply_is_audited_when_baseline_refetch_fails(client, monkeypatch):
    from rbac_admin.main import app

    role = await create_role(client)
    sid = (await client.post("/staging/")).json()["id"]
    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "reports", "action": "read"})

    async def unavailable():
        raise ConnectionError("database went away")

    monkeypatch.setattr(app.state.permission_backend, "list_roles", unavailable)
    with pytest.raises(ConnectionError):
        await client.post(f"/staging/{sid}/apply", headers={"X-Actor": "ops@example.com"})
    monkeypatch.undo()

    listed = (await client.get(f"/permissions/roles/{role['id']}/permissions")).json()
    assert [(p["resource"], p["action"]) for p in listed] == [("reports", "read")]

    logs = (await client.get("/audit-logs", params={"action": "apply"})).json()
    assert logs["total"] == 1
    entry = logs["items"][0]
    assert (entry["actor"], entry["resource_id"]) == ("ops@example.com", sid)
    assert (entry["details"]["succeeded"], entry["details"]["failed"]) == (1, 0)

    assert (await client.get(f"/staging/{sid}")).json()["needs_resync"] is True


async def test_staging_errors(client):
    role = await create_role(client)
    sid = (await client.post("/staging/")).json()["id"]

    protected = await client.post(f"/staging/{sid}/toggle", json={"role_id": VIEWER_ROLE_ID, "resource": "nodes", "action": "classify"})
    assert protected.status_code == 403

    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "nodes", "action": "read"})
    stale = await client.post(f"/staging/{sid}/refresh")
    assert stale.status_code == 409
    assert stale.json()["error"] == "stale_session"

    assert (await client.post(f"/staging/{sid}/discard")).json()["status"] == "clean"
    assert (await client.post(f"/staging/{sid}/refresh")).status_code == 200

    bad_scope = await client.get(
        f"/staging/{sid}/cells",
        params={"role_id": role["id"], "resource": "nodes", "action": "read", "scope_type": "group"},
    )
    assert bad_scope.status_code == 400

    assert (await client.delete(f"/staging/{sid}")).status_code == 204
    assert (await client.get(f"/staging/{sid}")).status_code == 404


async def test_staging_matrix_shows_pending(client):
    role = await create_role(client)
    sid = (await client.post("/staging/")).json()["id"]
    await client.post(f"/staging/{sid}/toggle", json={
        "role_id": role["id"], "resource": "groups", "action": "update",
        "scope": {"type": "instance", "value": "web"},
    })

    matrix = (await client.get(f"/staging/{sid}/matrix")).json()
    column = next(c for c in matrix["columns"] if c["role"]["id"] == role["id"])
    scoped = [c for c in column["cells"] if c["scope"] == {"type": "instance", "value": "web"}]
    assert scoped == [{
        "resource": "groups", "action": "update",
        "scope": {"type": "instance", "value": "web"},
        "granted": True, "pending": True,
    }]


async def test_deleting_role_drops_staged_edits(client):
    role = await create_role(client)
    sid = (await client.post("/staging/")).json()["id"]
    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "nodes", "action": "read"})

    await client.delete(f"/permissions/roles/{role['id']}")

    view = (await client.get(f"/staging/{sid}")).json()
    assert view["pending"] == []
    assert view["status"] == "clean"


async def test_failed_role_deletion_keeps_staged_edits(client, monkeypatch):
    role = await create_role(client)
    sid = (await client.post("/staging/")).json()["id"]
    await client.post(f"/staging/{sid}/toggle", json={"role_id": role["id"], "resource": "nodes", "action": "read"})

    async def failing_commit(self):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(AsyncSession, "commit", failing_commit)
    with pytest.raises(RuntimeError):
        await client.delete(f"/permissions/roles/{role['id']}")
    monkeypatch.undo()

    assert (await client.get(f"/permissions/roles/{role['id']}")).status_code == 200
    view = (await client.get(f"/staging/{sid}")).json()
    assert view["status"] == "dirty"
    assert len(view["pending"]) == 1


# ============================================================================
# Users and audit
# ============================================================================

async def test_user_role_assignment(client, users):
    role = await create_role(client)
    alice = users["alice"]

    assigned = await client.put(f"/users/{alice}/roles", json={"role_ids": [role["id"], VIEWER_ROLE_ID]})
    assert assigned.status_code == 200
    assert {r["name"] for r in assigned.json()["roles"]} == {"deployer", "viewer"}

    holders = (await client.get("/users/", params={"role_id": role["id"]})).json()
    assert [u["username"] for u in holders] == ["alice"]
    assert [u["username"] for u in (await client.get("/users/")).json()] == ["alice", "bob"]

    removed = await client.delete(f"/users/{alice}/roles/{VIEWER_ROLE_ID}")
    assert [r["name"] for r in removed.json()["roles"]] == ["deployer"]
    assert (await client.delete(f"/users/{alice}/roles/{VIEWER_ROLE_ID}")).status_code == 404

    added = await client.post(f"/users/{users['bob']}/roles/{ADMIN_ROLE_ID}")
    assert [r["name"] for r in added.json()["roles"]] == ["admin"]

    roles = (await client.get(f"/users/{alice}/roles")).json()
    assert [r["name"] for r in roles] == ["deployer"]

    # Deleting the role removes the assignment
    await client.delete(f"/permissions/roles/{role['id']}")
    assert (await client.get(f"/users/{alice}/roles")).json() == []


async def test_user_assignment_errors(client, users):
    assert (await client.get("/users/01HZZZZZZZZZZZZZZZZZZZZZZZ/roles")).status_code == 404
    unknown_role = await client.put(f"/users/{users['alice']}/roles", json={"role_ids": ["01HZZZZZZZZZZZZZZZZZZZZZZZ"]})
    assert unknown_role.status_code == 404
    assert (await client.get(f"/users/{users['alice']}/roles")).json() == []


async def test_audit_log_records_actor(client):
    role = await create_role(client)

    logs = (await client.get("/audit-logs", params={"resource_type": "role"})).json()

    assert logs["total"] == 1
    entry = logs["items"][0]
    assert (entry["actor"], entry["action"], entry["resource_id"]) == ("ops@example.com", "create", role["id"])
    assert logs["pages"] == 1
