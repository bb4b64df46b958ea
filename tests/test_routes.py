"""API routes, exercised through the ASGI app with an admin user."""

import pytest
from httpx import AsyncClient


async def create_permission_set(client: AsyncClient, name: str = "Sales") -> dict:
    response = await client.post("/permission-sets", json={"name": name, "description": "Order desk"})
    assert response.status_code == 201
    return response.json()


async def attach(client: AsyncClient, permission_set_id: str, table_name: str, **flags) -> dict:
    body = {"table_name": table_name}
    if flags:
        body["permissions"] = flags
    response = await client.post(f"/permission-sets/{permission_set_id}/tables", json=body)
    assert response.status_code in (200, 201)
    return response.json()


def field_id(table: dict, field_name: str) -> str:
    return next(f["id"] for f in table["fields"] if f["field_name"] == field_name)


class TestHealth:

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestPermissionSetRoutes:

    async def test_create_and_get(self, client: AsyncClient):
        created = await create_permission_set(client)
        assert created["name"] == "Sales"
        assert created["table_count"] == 0

        response = await client.get(f"/permission-sets/{created['id']}")
        assert response.status_code == 200
        assert response.json()["tables"] == []

    async def test_duplicate_name_is_409(self, client: AsyncClient):
        await create_permission_set(client)
        response = await client.post("/permission-sets", json={"name": "Sales"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    async def test_short_name_is_rejected(self, client: AsyncClient):
        response = await client.post("/permission-sets", json={"name": "S"})
        assert response.status_code == 400
        assert "name" in response.json()

    async def test_unknown_permission_set_is_404(self, client: AsyncClient):
        response = await client.get("/permission-sets/01HNOPE0000000000000000000")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_available_tables(self, client: AsyncClient):
        response = await client.get("/permission-sets/available-tables")
        assert response.json() == {"tables": ["customers", "orders"]}


class TestTableRoutes:

    async def test_attach_then_repeat_attach(self, client: AsyncClient):
        ps = await create_permission_set(client)

        first = await client.post(f"/permission-sets/{ps['id']}/tables", json={"table_name": "orders"})
        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["fields_assigned"] == 4
        assert first.json()["table"]["can_read"] is True

        second = await client.post(
            f"/permission-sets/{ps['id']}/tables",
            json={"table_name": "orders", "permissions": {"can_read": True, "can_update": True}},
        )
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["table"]["can_update"] is True

        tables = await client.get(f"/permission-sets/{ps['id']}/tables")
        assert len(tables.json()) == 1

    async def test_attach_unknown_table_is_404(self, client: AsyncClient):
        ps = await create_permission_set(client)
        response = await client.post(f"/permission-sets/{ps['id']}/tables", json={"table_name": "nope"})
        assert response.status_code == 404

    async def test_edit_without_update_is_422(self, client: AsyncClient):
        ps = await create_permission_set(client)
        attached = await attach(client, ps["id"], "orders")

        response = await client.patch(
            f"/permission-sets/fields/{field_id(attached['table'], 'total')}",
            json={"can_edit": True},
        )

        assert response.status_code == 422
        body = response.json()["error"]
        assert body["code"] == "INVALID_TRANSITION"
        assert body["details"]["field_name"] == "total"

    async def test_update_off_cascades_to_fields(self, client: AsyncClient):
        ps = await create_permission_set(client)
        attached = await attach(client, ps["id"], "orders", can_read=True, can_update=True)
        table_id = attached["table"]["id"]
        await client.patch(
            f"/permission-sets/{ps['id']}/tables/{table_id}/fields",
            json={"fields": {"total": {"can_edit": True}}},
        )

        response = await client.patch(f"/permission-sets/{ps['id']}/tables/{table_id}", json={"can_update": False})

        assert response.status_code == 200
        assert all(not f["can_edit"] for f in response.json()["fields"])

    async def test_detach(self, client: AsyncClient):
        ps = await create_permission_set(client)
        attached = await attach(client, ps["id"], "orders")

        response = await client.delete(f"/permission-sets/{ps['id']}/tables/{attached['table']['id']}")

        assert response.status_code == 200
        assert response.json()["fields_removed"] == 4
        assert response.json()["table_count"] == 0

    async def test_table_of_another_set_is_404(self, client: AsyncClient):
        sales = await create_permission_set(client)
        support = await create_permission_set(client, "Support")
        attached = await attach(client, sales["id"], "orders")

        response = await client.get(f"/permission-sets/{support['id']}/tables/{attached['table']['id']}/fields")
        assert response.status_code == 404


class TestDeleteAndAudit:

    async def test_delete_reports_cascade_and_is_audited(self, client: AsyncClient, db_session):
        ps = await create_permission_set(client)
        await attach(client, ps["id"], "orders")
        await client.post("/users/user-1/permission-sets", json={"permission_set_id": ps["id"]})

        response = await client.delete(f"/permission-sets/{ps['id']}")

        assert response.status_code == 200
        report = response.json()
        assert report["tables_removed"] == 1
        assert report["fields_removed"] == 4
        assert report["users_unassigned"] == 1

        # Requests share one uncommitted session here
        await db_session.flush()
        logs = await client.get("/audit-logs", params={"action": "delete", "resource_type": "permission_set"})
        assert logs.status_code == 200
        body = logs.json()
        assert body["total"] == 1
        entry = body["items"][0]
        assert entry["actor_id"] == "admin-appwrite-id"
        assert entry["resource_id"] == ps["id"]
        assert entry["details"]["users_unassigned"] == 1


class TestUserRoutes:

    async def test_profile_assignment_and_effective_access(self, client: AsyncClient):
        ps = await create_permission_set(client)
        await attach(client, ps["id"], "orders")
        profile = (await client.post("/profiles", json={"name": "Manager"})).json()
        await client.post(f"/profiles/{profile['id']}/permission-sets", json={"permission_set_id": ps["id"]})

        response = await client.put("/users/user-1/profile", json={"profile_id": profile["id"]})

        assert response.status_code == 200
        assert response.json()["changed"] is True
        assert response.json()["permission_set_names"] == ["Sales"]

        sets = (await client.get("/users/user-1/permission-sets")).json()
        assert sets["profile_id"] == profile["id"]
        assert [(s["name"], s["source_type"]) for s in sets["permission_sets"]] == [("Sales", "profile")]

        field = (await client.get("/users/user-1/access/orders/total")).json()
        assert (field["can_view"], field["can_edit"]) == (True, False)

        table = (await client.get("/users/user-1/access/customers")).json()
        assert table["permissions"]["can_read"] is False

    async def test_same_profile_again_is_informational(self, client: AsyncClient):
        profile = (await client.post("/profiles", json={"name": "Viewer"})).json()
        await client.put("/users/user-1/profile", json={"profile_id": profile["id"]})

        response = await client.put("/users/user-1/profile", json={"profile_id": profile["id"]})

        assert response.status_code == 200
        assert response.json()["changed"] is False

    async def test_purge_user(self, client: AsyncClient):
        ps = await create_permission_set(client)
        await client.post("/users/user-1/permission-sets", json={"permission_set_id": ps["id"]})

        response = await client.delete("/users/user-1/assignments")

        assert response.status_code == 200
        assert response.json()["direct_removed"] == 1
        sets = (await client.get("/users/user-1/permission-sets")).json()
        assert sets["permission_sets"] == []


class TestEditSessionRoute:

    async def test_commit_batch(self, client: AsyncClient):
        ps = await create_permission_set(client)

        response = await client.post("/edit-sessions/commit", json={"ops": [
            {"op": "attach_table", "permission_set_id": ps["id"], "table_name": "orders"},
            {
                "op": "update_field_flags",
                "permission_set_id": ps["id"],
                "table_name": "orders",
                "field_name": "total",
                "field_flags": {"can_view": False},
            },
            {"op": "assign_user_permission_set", "permission_set_id": ps["id"], "user_id": "user-1"},
            {"op": "assign_user_permission_set", "permission_set_id": ps["id"], "user_id": "user-2"},
            {"op": "unassign_user_permission_set", "permission_set_id": ps["id"], "user_id": "user-2"},
        ]})

        assert response.status_code == 200
        body = response.json()
        assert body["staged"] == 3
        assert body["report"]["table_counts"] == {ps["id"]: 1}
        assert body["report"]["users_synced"] == 1

        field = (await client.get("/users/user-1/access/orders/total")).json()
        assert field["can_view"] is False

    async def test_failed_commit_applies_nothing(self, client: AsyncClient):
        ps = await create_permission_set(client)

        response = await client.post("/edit-sessions/commit", json={"ops": [
            {"op": "attach_table", "permission_set_id": ps["id"], "table_name": "orders"},
            {
                "op": "assign_profile_permission_set",
                "permission_set_id": ps["id"],
                "profile_id": "01HNOPE0000000000000000000",
            },
        ]})

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "COMMIT_FAILED"
        assert error["details"]["cause"]["code"] == "NOT_FOUND"

    async def test_op_missing_its_target_is_rejected(self, client: AsyncClient):
        response = await client.post("/edit-sessions/commit", json={"ops": [
            {"op": "update_field_flags", "permission_set_id": "ps", "table_name": "orders"},
        ]})
        assert response.status_code == 400

    @pytest.mark.parametrize("ops", [[], None])
    async def test_empty_batch_is_rejected(self, client: AsyncClient, ops):
        response = await client.post("/edit-sessions/commit", json={"ops": ops})
        assert response.status_code == 400
