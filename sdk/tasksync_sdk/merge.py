"""
Document reconciliation for the TaskSync SDK.

A document is {"state": {<collection>: [item, ...], ...}, "version": n}.
Items carry an "id" and usually an "updatedAt" (ISO 8601 string or Unix ms).

Rules applied by reconcile_collections, per tracked collection:
    - A remote item whose id is missing locally is appended (adopt)
    - A remote item with a strictly newer updatedAt overwrites the local
      item's fields (last-write-wins, missing timestamp counts as epoch 0)
    - Otherwise, a remote item marked isShared copies its sticky overlay
      fields onto the local item, so shared membership is never lost
    - Ids are never dropped: the result is the union of both id sets
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

TRACKED_COLLECTIONS = ("spaces", "folders", "lists", "tasks", "docs")
SHARED_COLLECTIONS = ("spaces", "folders", "lists", "tasks")
STICKY_FIELDS = ("isShared", "ownerId", "ownerName", "permission", "name", "color", "icon")


def item_timestamp(item: Dict[str, Any]) -> float:
    """updatedAt as Unix milliseconds; missing or unparseable is 0."""
    value = item.get("updatedAt")
    if not value or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp() * 1000
    return 0.0


def _items(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [i for i in value if isinstance(i, dict)]


def ensure_state(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a document with a dict "state", creating an empty one if needed."""
    if not isinstance(document, dict):
        document = {"state": {}, "version": 0}
    if not isinstance(document.get("state"), dict):
        document["state"] = {}
    return document


def fold_shared_view(remote: Optional[Dict[str, Any]], shared: Dict[str, Any]) -> Dict[str, Any]:
    """Fold a shared view into the remote document's state.

    An existing id has its fields overwritten by the shared version; a new
    id is appended. Returns the (possibly newly created) remote document.
    """
    remote = ensure_state(remote)
    state = remote["state"]

    for name in SHARED_COLLECTIONS:
        shared_items = _items(shared.get(name))
        if not shared_items:
            continue
        if not isinstance(state.get(name), list):
            state[name] = []
        target = state[name]

        existing = {i.get("id"): i for i in target if isinstance(i, dict)}
        for item in shared_items:
            current = existing.get(item.get("id"))
            if current is not None:
                current.update(item)
            else:
                target.append(item)
                existing[item.get("id")] = item

    return remote


def apply_sticky_fields(local_item: Dict[str, Any], remote_item: Dict[str, Any]) -> None:
    """Copy shared-membership metadata from remote onto local.

    A sticky field absent on the remote item is removed locally.
    """
    for field in STICKY_FIELDS:
        if field in remote_item:
            local_item[field] = remote_item[field]
        else:
            local_item.pop(field, None)
    local_item["isShared"] = True


def reconcile_collections(
    local_state: Dict[str, Any],
    remote_state: Dict[str, Any],
    collections: Tuple[str, ...] = TRACKED_COLLECTIONS,
) -> Dict[str, Tuple[int, int]]:
    """Merge remote_state into local_state in place.

    Returns:
        Per collection, (added, updated) counts for collections that changed
    """
    stats: Dict[str, Tuple[int, int]] = {}

    for name in collections:
        local_list = local_state.get(name)
        if not isinstance(local_list, list):
            local_list = []
        local_map = {i.get("id"): i for i in local_list if isinstance(i, dict)}

        added = updated = 0
        for remote_item in _items(remote_state.get(name)):
            item_id = remote_item.get("id")
            local_item = local_map.get(item_id)

            if local_item is None:
                local_list.append(remote_item)
                local_map[item_id] = remote_item
                added += 1
            elif item_timestamp(remote_item) > item_timestamp(local_item):
                local_item.update(remote_item)
                updated += 1
            elif remote_item.get("isShared"):
                apply_sticky_fields(local_item, remote_item)

        if added or updated:
            local_state[name] = local_list
            stats[name] = (added, updated)

    return stats
