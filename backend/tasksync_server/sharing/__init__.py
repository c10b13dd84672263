"""
Sharing module for TaskSync.

This module handles:
- Item type to collection mapping
- Permissions and access checks for shared resources
- The storage and sharing operations exposed over HTTP
"""

from .acl import AccessDeniedError, Permission, SharePolicy, grants_permission
from .collections import (
    ItemType,
    UnknownItemTypeError,
    apply_item,
    collection_for,
    ensure_state,
    overlay_updates,
    upsert_item,
)
from .service import (
    CorruptDocumentError,
    InvalidRequestError,
    NotFoundError,
    SharingService,
)

__all__ = [
    "AccessDeniedError",
    "Permission",
    "SharePolicy",
    "grants_permission",
    "ItemType",
    "UnknownItemTypeError",
    "apply_item",
    "collection_for",
    "ensure_state",
    "overlay_updates",
    "upsert_item",
    "CorruptDocumentError",
    "InvalidRequestError",
    "NotFoundError",
    "SharingService",
]
