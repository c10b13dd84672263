"""
Unit tests for item types and collection helpers.
"""

import pytest

from backend.tasksync_server.sharing import (
    ItemType,
    UnknownItemTypeError,
    apply_item,
    collection_for,
    ensure_state,
    overlay_updates,
    upsert_item,
)
from backend.tasksync_server.store import PendingUpdate


def make_update(item_type, payload, update_id="u1"):
    return PendingUpdate(id=update_id, owner_id="o", item_type=item_type, payload=payload, created_at=0)


class TestItemTypes:
    """Tests for the explicit item type map."""

    @pytest.mark.parametrize(
        "item_type,collection",
        [
            ("space", "spaces"),
            ("folder", "folders"),
            ("list", "lists"),
            ("task", "tasks"),
            ("doc", "docs"),
            ("notification", "notifications"),
        ],
    )
    def test_mapping(self, item_type, collection):
        assert collection_for(item_type) == collection

    def test_unknown_type_rejected(self):
        with pytest.raises(UnknownItemTypeError):
            collection_for("status")

    def test_unknown_type_is_value_error(self):
        with pytest.raises(ValueError):
            ItemType.parse("tasks")


class TestUpsert:
    """Tests for upsert_item / apply_item."""

    def test_append_new(self):
        state = {}
        assert upsert_item(state, "tasks", {"id": "t1"}) is True
        assert state == {"tasks": [{"id": "t1"}]}

    def test_shallow_merge_existing(self):
        state = {"tasks": [{"id": "t1", "name": "A", "status": "todo"}]}

        assert upsert_item(state, "tasks", {"id": "t1", "name": "B"}) is False
        assert state["tasks"] == [{"id": "t1", "name": "B", "status": "todo"}]

    def test_notifications_are_prepended(self):
        state = {"notifications": [{"id": "n1"}]}
        apply_item(state, ItemType.NOTIFICATION, {"id": "n2"})

        assert [n["id"] for n in state["notifications"]] == ["n2", "n1"]

    def test_tasks_are_appended(self):
        state = {"tasks": [{"id": "t1"}]}
        apply_item(state, ItemType.TASK, {"id": "t2"})

        assert [t["id"] for t in state["tasks"]] == ["t1", "t2"]

    def test_ensure_state(self):
        assert ensure_state(None) == {"state": {}}
        assert ensure_state({"version": 3}) == {"version": 3, "state": {}}
        doc = {"state": {"tasks": []}}
        assert ensure_state(doc) is doc


class TestOverlay:
    """Tests for overlay_updates."""

    def test_overlay_applies_in_order(self):
        state = {"tasks": [{"id": "t1", "name": "old"}]}
        applied = overlay_updates(
            state,
            [
                make_update("task", {"id": "t1", "name": "new"}, "u1"),
                make_update("list", {"id": "l1"}, "u2"),
            ],
        )

        assert applied == 2
        assert state["tasks"] == [{"id": "t1", "name": "new"}]
        assert state["lists"] == [{"id": "l1"}]

    def test_overlay_skips_unknown_types(self):
        state = {}
        applied = overlay_updates(state, [make_update("task_delete", {"id": "t1"})])

        assert applied == 0
        assert state == {}
