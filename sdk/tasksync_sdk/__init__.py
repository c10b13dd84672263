"""
TaskSync Python SDK - local-first document sync for the TaskSync server.

This SDK provides:
- SyncEngine: load/save with durable + fallback local caches, merge-on-load
  and a durable outbox for remote writes
- RemoteClient: storage and sharing endpoints over HTTP
- RealtimeSubscriber: shared_update notifications over WebSocket

Example:
    >>> from sdk.tasksync_sdk import SyncEngine, SyncSettings
    >>>
    >>> async with SyncEngine(SyncSettings(), token=token) as engine:
    ...     doc = await engine.load("tasksync-app-storage")
    ...     doc["state"]["tasks"].append({"id": "t1", "name": "Plan sprint"})
    ...     await engine.save("tasksync-app-storage", doc)

Invariants:
    - The local copy is the working copy; remote data is merged into it
    - Shared-membership fields on items are never lost by a merge

Version: 0.3.0
"""

__version__ = "0.3.0"

from .config import SyncSettings
from .engine import SyncEngine, serialize
from .errors import (
    AccessDeniedError,
    GrantConflictError,
    MalformedDocumentError,
    NotAuthenticatedError,
    QuotaExceededError,
    RemoteUnavailableError,
    SyncError,
)
from .local_cache import FileCache, SqliteCache
from .merge import (
    STICKY_FIELDS,
    TRACKED_COLLECTIONS,
    fold_shared_view,
    item_timestamp,
    reconcile_collections,
)
from .outbox import Outbox, OutboxEntry
from .realtime import RealtimeSubscriber
from .remote import RemoteClient, decode_document

__all__ = [
    "__version__",
    "SyncEngine",
    "SyncSettings",
    "serialize",
    "RemoteClient",
    "decode_document",
    "RealtimeSubscriber",
    "SqliteCache",
    "FileCache",
    "Outbox",
    "OutboxEntry",
    "STICKY_FIELDS",
    "TRACKED_COLLECTIONS",
    "fold_shared_view",
    "item_timestamp",
    "reconcile_collections",
    "SyncError",
    "NotAuthenticatedError",
    "RemoteUnavailableError",
    "MalformedDocumentError",
    "GrantConflictError",
    "AccessDeniedError",
    "QuotaExceededError",
]
