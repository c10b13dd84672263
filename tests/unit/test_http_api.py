"""
Unit tests for the HTTP API.

Tests cover:
- Storage namespacing and lenient authentication
- Sharing routes: auth, validation and error status mapping
- Health and CORS
"""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from backend.tasksync_server.api import create_http_app
from backend.tasksync_server.config import HttpConfig


def app_client(stack, config=None):
    return TestClient(TestServer(create_http_app(stack.service, stack.authenticator, config)))


def bearer(stack, identity):
    return {"Authorization": f"Bearer {stack.token(identity)}"}


class TestStorageRoutes:
    """Tests for /api/storage/{key}."""

    @pytest.mark.asyncio
    async def test_missing_key_returns_null(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.get("/api/storage/nothing")
            assert resp.status == 200
            assert await resp.json() is None

    @pytest.mark.asyncio
    async def test_authenticated_writes_are_namespaced(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        async with app_client(stack) as client:
            resp = await client.post(
                "/api/storage/prefs", json={"theme": "dark"}, headers=bearer(stack, ann)
            )
            assert resp.status == 200
            assert await resp.json() == {"success": True, "version": 1}

            resp = await client.get("/api/storage/prefs", headers=bearer(stack, ann))
            assert await resp.json() == {"theme": "dark"}

            resp = await client.get("/api/storage/prefs")
            assert await resp.json() is None

    @pytest.mark.asyncio
    async def test_invalid_token_falls_back_to_global_key(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.post(
                "/api/storage/legacy",
                json={"a": 1},
                headers={"Authorization": "Bearer not-a-token"},
            )
            assert resp.status == 200
        assert await stack.documents.get("legacy") == {"a": 1}

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.post(
                "/api/storage/k", data="{nope", headers={"Content-Type": "application/json"}
            )
            assert resp.status == 400
            assert (await resp.json())["error_code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_body_over_limit_rejected(self, stack):
        await stack.start()
        async with app_client(stack, HttpConfig(max_body_bytes=1024)) as client:
            resp = await client.post("/api/storage/k", json={"blob": "x" * 4096})
            assert resp.status == 413


class TestSharingRoutes:
    """Tests for invite / accept / members / leave / propagate / shared."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/api/invite"),
            ("GET", "/api/invitations"),
            ("POST", "/api/invitations/g1/accept"),
            ("GET", "/api/resource/members?resourceType=space&resourceId=s1"),
            ("POST", "/api/shared/leave"),
            ("POST", "/api/shared/propagate"),
            ("GET", "/api/shared"),
        ],
    )
    async def test_requires_token(self, stack, method, path):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.request(method, path, json={})
            assert resp.status == 401
            assert (await resp.json())["error_code"] == "UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_invite_accept_and_shared_view(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com", name="Ann")
        bob = await stack.user("bob@example.com", name="Bob")
        await stack.documents.set(
            stack.owner_key(ann), {"state": {"spaces": [{"id": "s1", "name": "Work"}]}}
        )

        async with app_client(stack) as client:
            resp = await client.post(
                "/api/invite",
                json={"email": "bob@example.com", "resourceType": "space", "resourceId": "s1"},
                headers=bearer(stack, ann),
            )
            assert resp.status == 200
            body = await resp.json()
            assert body["success"] is True
            assert body["message"] == "Invitation sent"
            grant_id = body["invitation"]["id"]

            resp = await client.get("/api/invitations", headers=bearer(stack, bob))
            assert [g["id"] for g in await resp.json()] == [grant_id]

            resp = await client.post(f"/api/invitations/{grant_id}/accept", headers=bearer(stack, bob))
            assert await resp.json() == {"success": True}

            resp = await client.get("/api/shared", headers=bearer(stack, bob))
            view = await resp.json()
            assert [s["name"] for s in view["spaces"]] == ["Work (Shared)"]

            resp = await client.get(
                "/api/resource/members",
                params={"resourceType": "space", "resourceId": "s1"},
                headers=bearer(stack, bob),
            )
            members = await resp.json()
            assert [m["user_name"] for m in members] == ["Bob", "Ann"]

    @pytest.mark.asyncio
    async def test_invite_missing_fields(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        async with app_client(stack) as client:
            resp = await client.post(
                "/api/invite", json={"email": "bob@example.com"}, headers=bearer(stack, ann)
            )
            assert resp.status == 400
            body = await resp.json()
            assert body["error_code"] == "INVALID_REQUEST"
            assert body["error"].startswith("Missing fields")

    @pytest.mark.asyncio
    async def test_duplicate_invite_conflicts(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        payload = {"email": "bob@example.com", "resourceType": "space", "resourceId": "s1"}
        async with app_client(stack) as client:
            await client.post("/api/invite", json=payload, headers=bearer(stack, ann))
            resp = await client.post("/api/invite", json=payload, headers=bearer(stack, ann))
            assert resp.status == 409
            assert (await resp.json())["error_code"] == "GRANT_CONFLICT"

    @pytest.mark.asyncio
    async def test_accept_unknown_invitation(self, stack):
        await stack.start()
        bob = await stack.user("bob@example.com")
        async with app_client(stack) as client:
            resp = await client.post("/api/invitations/missing/accept", headers=bearer(stack, bob))
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_propagate_view_only_is_forbidden(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        bob = await stack.user("bob@example.com")
        grant = await stack.service.invite(ann, bob.email, "space", "s1", "view")
        await stack.service.accept(bob, grant.id)

        async with app_client(stack) as client:
            resp = await client.post(
                "/api/shared/propagate",
                json={"ownerId": ann.id, "type": "task", "data": {"id": "t1", "spaceId": "s1"}},
                headers=bearer(stack, bob),
            )
            assert resp.status == 403
            assert (await resp.json())["error_code"] == "ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_propagate_success(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        bob = await stack.user("bob@example.com")
        async with app_client(stack) as client:
            resp = await client.post(
                "/api/shared/propagate",
                json={"ownerId": ann.id, "type": "task", "data": {"id": "t1"}},
                headers=bearer(stack, bob),
            )
            assert resp.status == 200
            body = await resp.json()
            assert body["success"] is True
            assert body["created"] is True
            assert body["pendingUpdateId"]

    @pytest.mark.asyncio
    async def test_propagate_unknown_type(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        async with app_client(stack) as client:
            resp = await client.post(
                "/api/shared/propagate",
                json={"ownerId": ann.id, "type": "widget", "data": {"id": "w1"}},
                headers=bearer(stack, ann),
            )
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_leave(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        bob = await stack.user("bob@example.com")
        grant = await stack.service.invite(ann, bob.email, "list", "l1")
        await stack.service.accept(bob, grant.id)

        async with app_client(stack) as client:
            resp = await client.post(
                "/api/shared/leave",
                json={"resourceType": "list", "resourceId": "l1"},
                headers=bearer(stack, bob),
            )
            assert await resp.json() == {"success": True}
        assert await stack.identities.find_grant("list", "l1", bob.email) is None


class TestMiscRoutes:
    """Tests for health, CORS and the WebSocket handshake."""

    @pytest.mark.asyncio
    async def test_health(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.get("/api/health")
            body = await resp.json()
            assert body["healthy"] is True
            assert body["version"]

    @pytest.mark.asyncio
    async def test_cors_headers_on_errors(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.get("/api/shared", headers={"Origin": "http://app.local"})
            assert resp.status == 401
            assert resp.headers["Access-Control-Allow-Origin"] == "http://app.local"

    @pytest.mark.asyncio
    async def test_cors_preflight(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.options("/api/storage/k", headers={"Origin": "http://app.local"})
            assert resp.status == 200
            assert "POST" in resp.headers["Access-Control-Allow-Methods"]

    @pytest.mark.asyncio
    async def test_websocket_requires_token(self, stack):
        await stack.start()
        async with app_client(stack) as client:
            resp = await client.get("/ws")
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_websocket_receives_propagated_update(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        bob = await stack.user("bob@example.com")
        async with app_client(stack) as client:
            ws = await client.ws_connect("/ws", params={"token": stack.token(ann)})
            await ws.send_json({"action": "join_room", "room": ann.id})
            for _ in range(100):
                if stack.hub.members(ann.id):
                    break
                await asyncio.sleep(0.01)

            await stack.service.propagate(bob, ann.id, "task", {"id": "t1"})

            message = await ws.receive_json(timeout=5)
            assert message == {"event": "shared_update", "type": "task", "data": {"id": "t1"}}
            await ws.close()
