"""
Unit tests for the SDK SyncEngine.

Tests cover:
- Local-only behavior without a token
- Adopting, merging with and writing back to the remote document
- Degrading to local data when the remote is down, malformed or rejects the request
- Unreadable fallback cache entries
- Shared view folding for the primary document
- Fallback cache quota and migration
"""

import json
from urllib.parse import unquote

import httpx
import pytest

from sdk.tasksync_sdk.config import SyncSettings
from sdk.tasksync_sdk.engine import SyncEngine, serialize
from sdk.tasksync_sdk.remote import RemoteClient

PRIMARY_KEY = "tasksync-app-storage"


class FakeServer:
    """In-memory stand-in for the storage and shared endpoints."""

    def __init__(self):
        self.raw = {}
        self.shared = {"spaces": [], "folders": [], "lists": [], "tasks": []}
        self.requests = []
        self.down = False
        self.status = None

    def handler(self, request):
        self.requests.append((request.method, request.url.path))
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if self.status is not None:
            return httpx.Response(self.status, json={"error": "rejected"})

        path = request.url.path
        if path == "/api/shared":
            return httpx.Response(200, json=self.shared)
        if path.startswith("/api/storage/"):
            key = unquote(path[len("/api/storage/"):])
            if request.method == "GET":
                return httpx.Response(200, text=self.raw.get(key, "null"))
            self.raw[key] = request.content.decode()
            return httpx.Response(200, json={"success": True, "version": 1})
        return httpx.Response(404, json={"error": "Not Found"})

    def stored(self, key):
        return json.loads(self.raw[key])


def make_engine(data_dir, server, token="token-1", **overrides):
    overrides.setdefault("outbox_initial_delay", 0.001)
    overrides.setdefault("outbox_max_delay", 0.005)
    overrides.setdefault("outbox_max_retries", 2)
    settings = SyncSettings(cache_dir=data_dir, **overrides)
    remote = RemoteClient(
        settings.base_url, token=token, transport=httpx.MockTransport(server.handler)
    )
    return SyncEngine(settings, remote=remote)


class TestUnauthenticated:
    """Tests for SyncEngine without a token."""

    @pytest.mark.asyncio
    async def test_local_only(self, data_dir):
        server = FakeServer()
        async with make_engine(data_dir, server, token=None) as engine:
            assert await engine.load("k") is None

            await engine.save("k", {"state": {"tasks": [{"id": "a"}]}})
            assert await engine.load("k") == {"state": {"tasks": [{"id": "a"}]}}
            assert await engine.flush() == 0

        assert server.requests == []

    @pytest.mark.asyncio
    async def test_fallback_entry_migrates_to_durable(self, data_dir):
        server = FakeServer()
        async with make_engine(data_dir, server, token=None) as engine:
            await engine.fallback.set("k", '{"state":{}}')

            assert await engine.load("k") == {"state": {}}
            assert await engine.durable.get("k") == '{"state":{}}'

    @pytest.mark.asyncio
    async def test_unreadable_fallback_entry_is_ignored(self, data_dir):
        server = FakeServer()
        async with make_engine(data_dir, server, token=None) as engine:
            engine.fallback._path("k").write_bytes(b"\xff\xfe{")

            assert await engine.load("k") is None
            assert await engine.durable.get("k") is None


class TestAuthenticatedLoad:
    """Tests for SyncEngine.load with a token."""

    @pytest.mark.asyncio
    async def test_adopts_remote_when_local_empty(self, data_dir):
        server = FakeServer()
        server.raw["prefs"] = json.dumps({"theme": "dark"})

        async with make_engine(data_dir, server) as engine:
            assert await engine.load("prefs") == {"theme": "dark"}
            assert await engine.durable.get("prefs") == '{"theme":"dark"}'

        assert ("GET", "/api/shared") not in server.requests

    @pytest.mark.asyncio
    async def test_double_encoded_remote(self, data_dir):
        server = FakeServer()
        server.raw["prefs"] = json.dumps(json.dumps({"state": {"tasks": []}}))

        async with make_engine(data_dir, server) as engine:
            assert await engine.load("prefs") == {"state": {"tasks": []}}

    @pytest.mark.asyncio
    async def test_merge_and_write_back(self, data_dir):
        server = FakeServer()
        server.raw["doc"] = json.dumps(
            {
                "state": {
                    "tasks": [
                        {"id": "a", "name": "remote", "updatedAt": "2024-02-01T00:00:00Z"},
                        {"id": "b", "name": "B"},
                    ]
                },
                "version": 0,
            }
        )

        async with make_engine(data_dir, server) as engine:
            await engine.durable.set(
                "doc",
                serialize(
                    {
                        "state": {
                            "tasks": [
                                {"id": "a", "name": "local", "updatedAt": "2024-01-01T00:00:00Z"},
                                {"id": "c", "name": "offline"},
                            ]
                        },
                        "version": 0,
                    }
                ),
            )

            document = await engine.load("doc")
            assert [(t["id"], t["name"]) for t in document["state"]["tasks"]] == [
                ("a", "remote"),
                ("c", "offline"),
                ("b", "B"),
            ]

            assert await engine.flush() == 0

        assert server.stored("doc") == document

    @pytest.mark.asyncio
    async def test_load_is_idempotent(self, data_dir):
        server = FakeServer()
        server.raw["doc"] = json.dumps({"state": {"lists": [{"id": "l1", "updatedAt": 5}]}})

        async with make_engine(data_dir, server) as engine:
            await engine.save("doc", {"state": {"lists": [{"id": "l2"}]}})
            await engine.flush()
            server.raw["doc"] = json.dumps({"state": {"lists": [{"id": "l1", "updatedAt": 5}]}})

            first = await engine.load("doc")
            second = await engine.load("doc")

        assert serialize(first) == serialize(second)
        assert [i["id"] for i in second["state"]["lists"]] == ["l2", "l1"]

    @pytest.mark.asyncio
    async def test_local_without_remote_state_is_kept(self, data_dir):
        server = FakeServer()
        server.raw["doc"] = json.dumps({"theme": "dark"})

        async with make_engine(data_dir, server) as engine:
            await engine.durable.set("doc", '{"state":{"tasks":[]}}')
            assert await engine.load("doc") == {"state": {"tasks": []}}
            assert await engine.outbox.pending() == []

    @pytest.mark.asyncio
    async def test_remote_down_returns_local(self, data_dir):
        server = FakeServer()
        server.down = True

        async with make_engine(data_dir, server) as engine:
            await engine.durable.set("doc", '{"state":{"tasks":[{"id":"a"}]}}')
            assert await engine.load("doc") == {"state": {"tasks": [{"id": "a"}]}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 404, 408, 413, 429])
    async def test_rejected_remote_returns_local(self, data_dir, status):
        server = FakeServer()
        server.status = status

        async with make_engine(data_dir, server) as engine:
            assert await engine.load("doc") is None
            assert await engine.load(PRIMARY_KEY) is None

            await engine.durable.set("doc", '{"state":{"tasks":[{"id":"a"}]}}')
            assert await engine.load("doc") == {"state": {"tasks": [{"id": "a"}]}}
            assert await engine.outbox.pending() == []

    @pytest.mark.asyncio
    async def test_malformed_remote_ignored(self, data_dir):
        server = FakeServer()
        server.raw["doc"] = "{not json"

        async with make_engine(data_dir, server) as engine:
            assert await engine.load("doc") is None
            await engine.durable.set("doc", '{"state":{}}')
            assert await engine.load("doc") == {"state": {}}

    @pytest.mark.asyncio
    async def test_shared_view_folded_into_primary_document(self, data_dir):
        server = FakeServer()
        server.shared["spaces"] = [
            {"id": "s1", "name": "Work (Shared)", "isShared": True, "ownerName": "Ann"}
        ]
        server.shared["tasks"] = [{"id": "t1", "spaceId": "s1", "isShared": True}]

        async with make_engine(data_dir, server) as engine:
            document = await engine.load(PRIMARY_KEY)

        assert document == {
            "state": {
                "spaces": [
                    {"id": "s1", "name": "Work (Shared)", "isShared": True, "ownerName": "Ann"}
                ],
                "tasks": [{"id": "t1", "spaceId": "s1", "isShared": True}],
            },
            "version": 0,
        }

    @pytest.mark.asyncio
    async def test_shared_metadata_refreshes_local_item(self, data_dir):
        server = FakeServer()
        server.raw[PRIMARY_KEY] = json.dumps({"state": {}, "version": 0})
        server.shared["spaces"] = [
            {"id": "s1", "name": "Renamed (Shared)", "isShared": True, "permission": "view"}
        ]

        async with make_engine(data_dir, server) as engine:
            await engine.durable.set(
                PRIMARY_KEY,
                serialize({"state": {"spaces": [{"id": "s1", "name": "Old", "icon": "x"}]}}),
            )
            document = await engine.load(PRIMARY_KEY)

        assert document["state"]["spaces"] == [
            {"id": "s1", "name": "Renamed (Shared)", "isShared": True, "permission": "view"}
        ]


class TestSave:
    """Tests for SyncEngine.save and remove."""

    @pytest.mark.asyncio
    async def test_save_reaches_server(self, data_dir):
        server = FakeServer()
        async with make_engine(data_dir, server) as engine:
            await engine.save("doc", {"state": {"tasks": [{"id": "é"}]}})
            assert await engine.flush() == 0

        assert server.raw["doc"] == '{"state":{"tasks":[{"id":"é"}]}}'

    @pytest.mark.asyncio
    async def test_save_while_offline_is_sent_later(self, data_dir):
        server = FakeServer()
        server.down = True

        async with make_engine(data_dir, server) as engine:
            await engine.save("doc", {"state": {}})
            assert await engine.flush() == 1

            server.down = False
            assert await engine.flush() == 0

        assert server.stored("doc") == {"state": {}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 429])
    async def test_save_kept_until_server_accepts(self, data_dir, status):
        server = FakeServer()
        server.status = status

        async with make_engine(data_dir, server) as engine:
            await engine.save("doc", {"state": {"tasks": [{"id": "a"}]}})
            assert await engine.flush() == 1

            server.status = None
            assert await engine.flush() == 0

        assert server.stored("doc") == {"state": {"tasks": [{"id": "a"}]}}

    @pytest.mark.asyncio
    async def test_quota_exceeded_is_tolerated(self, data_dir):
        server = FakeServer()
        async with make_engine(data_dir, server, token=None, fallback_quota_bytes=16) as engine:
            document = {"state": {"docs": [{"id": "d", "body": "x" * 100}]}}
            await engine.save("doc", document)

            assert await engine.load("doc") == document
            assert await engine.fallback.get("doc") is None

    @pytest.mark.asyncio
    async def test_remove(self, data_dir):
        server = FakeServer()
        async with make_engine(data_dir, server, token=None) as engine:
            await engine.save("doc", {"a": 1})
            await engine.remove("doc")
            assert await engine.load("doc") is None
