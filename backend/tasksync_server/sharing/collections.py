"""
Item types and document collection helpers.

Documents look like {"state": {<collection>: [item, ...]}, "version": n}.
Item types map to collection names through an explicit table; an unknown
type is rejected instead of being pluralized into a collection nobody reads.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class UnknownItemTypeError(ValueError):
    """Item type has no collection mapping."""

    def __init__(self, item_type: str):
        self.item_type = item_type
        valid = [t.value for t in ItemType]
        super().__init__(f"Unknown item type '{item_type}', must be one of {valid}")


class ItemType(Enum):
    """Item types that may be written into an owner's document."""

    SPACE = "space"
    FOLDER = "folder"
    LIST = "list"
    TASK = "task"
    DOC = "doc"
    NOTIFICATION = "notification"

    @property
    def collection(self) -> str:
        return COLLECTIONS[self]

    @classmethod
    def parse(cls, value: str) -> ItemType:
        try:
            return cls(value)
        except ValueError:
            raise UnknownItemTypeError(value) from None


COLLECTIONS: dict[ItemType, str] = {
    ItemType.SPACE: "spaces",
    ItemType.FOLDER: "folders",
    ItemType.LIST: "lists",
    ItemType.TASK: "tasks",
    ItemType.DOC: "docs",
    ItemType.NOTIFICATION: "notifications",
}

# Newest first, no dedup by position
PREPEND_TYPES = frozenset({ItemType.NOTIFICATION})


def collection_for(item_type: str) -> str:
    """Collection name for an item type string.

    Raises:
        UnknownItemTypeError: If the type is not mapped
    """
    return ItemType.parse(item_type).collection


def ensure_state(document: Any) -> dict[str, Any]:
    """Return a document guaranteed to have a dict "state"."""
    if not isinstance(document, dict):
        document = {"state": {}}
    if not isinstance(document.get("state"), dict):
        document["state"] = {}
    return document


def upsert_item(
    state: dict[str, Any],
    collection: str,
    item: dict[str, Any],
    prepend: bool = False,
) -> bool:
    """Shallow-merge item into state[collection] by id, appending if new.

    Returns:
        True if the item was new
    """
    items = state.get(collection)
    if not isinstance(items, list):
        items = []
        state[collection] = items

    item_id = item.get("id")
    for index, existing in enumerate(items):
        if isinstance(existing, dict) and existing.get("id") == item_id:
            items[index] = {**existing, **item}
            return False

    if prepend:
        items.insert(0, item)
    else:
        items.append(item)
    return True


def contains_item(state: dict[str, Any], collection: str, item_id: Any) -> bool:
    items = state.get(collection)
    if not isinstance(items, list):
        return False
    return any(isinstance(i, dict) and i.get("id") == item_id for i in items)


def apply_item(state: dict[str, Any], item_type: ItemType, item: dict[str, Any]) -> bool:
    """Upsert an item of a given type into its collection."""
    return upsert_item(state, item_type.collection, item, prepend=item_type in PREPEND_TYPES)


def overlay_updates(state: dict[str, Any], updates: Iterable[Any]) -> int:
    """Apply pending updates to a state in place (not persisted).

    Updates with an unmapped type are skipped and logged.

    Returns:
        Number of updates applied
    """
    applied = 0
    for update in updates:
        try:
            item_type = ItemType.parse(update.item_type)
        except UnknownItemTypeError:
            logger.warning(
                "Skipping pending update with unknown type",
                extra={"update_id": update.id, "item_type": update.item_type},
            )
            continue
        apply_item(state, item_type, update.payload)
        applied += 1
    return applied
