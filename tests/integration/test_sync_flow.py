"""
Integration tests for the SDK against a running server.

Tests cover:
- Save/load round trip through the outbox
- Invite, accept and the shared view on the member's primary document
- Propagate into the owner's document and consumption of the pending update
- Real-time shared_update delivery to a subscriber
"""

import asyncio
from pathlib import Path

import pytest
from aiohttp.test_utils import TestServer

from backend.tasksync_server.api import create_http_app
from sdk.tasksync_sdk import RealtimeSubscriber, RemoteClient, SyncEngine, SyncSettings

PRIMARY_KEY = "tasksync-app-storage"

OWNER_DOCUMENT = {
    "state": {
        "spaces": [{"id": "s1", "name": "Work", "color": "#0af"}],
        "lists": [{"id": "l1", "name": "Backlog", "spaceId": "s1"}],
        "tasks": [{"id": "t1", "name": "Plan", "listId": "l1", "spaceId": "s1"}],
    },
    "version": 0,
}


def make_engine(server, data_dir, name, token):
    settings = SyncSettings(
        base_url=str(server.make_url("/api")),
        cache_dir=str(Path(data_dir) / name),
        outbox_initial_delay=0.01,
        outbox_max_delay=0.05,
    )
    return SyncEngine(settings, token=token)


async def wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestSyncFlow:
    """End-to-end sharing flow through SyncEngine and RemoteClient."""

    @pytest.mark.asyncio
    async def test_save_then_load_on_another_device(self, stack, data_dir):
        await stack.start()
        ann = await stack.user("ann@example.com", name="Ann")
        token = stack.token(ann)

        async with TestServer(create_http_app(stack.service, stack.authenticator)) as server:
            async with make_engine(server, data_dir, "laptop", token) as laptop:
                await laptop.save("prefs", {"theme": "dark"})
                assert await laptop.flush() == 0

            async with make_engine(server, data_dir, "phone", token) as phone:
                assert await phone.load("prefs") == {"theme": "dark"}

        assert await stack.documents.get(f"identity:{ann.id}:prefs") == {"theme": "dark"}

    @pytest.mark.asyncio
    async def test_share_propagate_and_merge(self, stack, data_dir):
        await stack.start()
        ann = await stack.user("ann@example.com", name="Ann")
        bob = await stack.user("bob@example.com", name="Bob")

        async with TestServer(create_http_app(stack.service, stack.authenticator)) as server:
            api_url = str(server.make_url("/api"))

            async with make_engine(server, data_dir, "ann", stack.token(ann)) as ann_engine:
                await ann_engine.save(PRIMARY_KEY, OWNER_DOCUMENT)
                assert await ann_engine.flush() == 0

                async with RemoteClient(api_url, token=stack.token(ann)) as ann_remote:
                    invitation = await ann_remote.invite("bob@example.com", "space", "s1", "edit")

                async with RemoteClient(api_url, token=stack.token(bob)) as bob_remote:
                    pending = await bob_remote.list_invitations()
                    assert [i["id"] for i in pending] == [invitation["id"]]
                    await bob_remote.accept_invitation(invitation["id"])

                    members = await bob_remote.list_members("space", "s1")
                    assert {m["user_name"]: m.get("role") for m in members} == {
                        "Bob": None,
                        "Ann": "owner",
                    }

                    async with make_engine(server, data_dir, "bob", stack.token(bob)) as bob_engine:
                        view = await bob_engine.load(PRIMARY_KEY)

                    [space] = view["state"]["spaces"]
                    assert space["name"] == "Work (Shared)"
                    assert space["ownerId"] == ann.id
                    assert space["ownerName"] == "Ann"
                    assert space["permission"] == "edit"
                    assert [t["id"] for t in view["state"]["tasks"]] == ["t1"]

                    result = await bob_remote.propagate(
                        ann.id,
                        "task",
                        {"id": "t2", "name": "Review", "listId": "l1", "spaceId": "s1"},
                    )
                    assert result["success"] is True
                    assert result["created"] is True

                assert await stack.pending.count_for(ann.id) == 1

                document = await ann_engine.load(PRIMARY_KEY)
                assert [t["id"] for t in document["state"]["tasks"]] == ["t1", "t2"]
                assert await ann_engine.flush() == 0

        assert await stack.pending.count_for(ann.id) == 0

    @pytest.mark.asyncio
    async def test_realtime_notification(self, stack):
        await stack.start()
        ann = await stack.user("ann@example.com")
        bob = await stack.user("bob@example.com")
        received = []

        async def on_update(item_type, data):
            received.append((item_type, data))

        async with TestServer(create_http_app(stack.service, stack.authenticator)) as server:
            subscriber = RealtimeSubscriber(str(server.make_url("/ws")), stack.token(ann), on_update)
            await subscriber.connect(rooms=[ann.id, "space:s1"])
            runner = asyncio.create_task(subscriber.run())
            try:
                await wait_for(lambda: stack.hub.members(ann.id) == 1)

                await stack.service.propagate(bob, ann.id, "list", {"id": "l9"})
                await wait_for(lambda: len(received) == 1)
            finally:
                await subscriber.close()
                await runner

        assert received == [("list", {"id": "l9"})]
