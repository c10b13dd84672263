"""
TaskSync Server - persistence and sharing backend for the task manager.

This package implements the server side of a multi-device task manager:
- Key -> JSON document store holding each identity's working document
- Users, share grants and explicit resource ownership
- A pending-update queue for edits made by collaborators
- Share/propagate handlers and a computed "shared view"
- A best-effort real-time notification hub

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Client    │────▶│    HTTP     │────▶│  SharingService  │
    │   (SDK)     │     │  (aiohttp)  │     │  (handlers)      │
    └──────┬──────┘     └─────────────┘     └────────┬─────────┘
           │                                         │
           │ ws                  ┌───────────────────┼───────────────────┐
           ▼                     ▼                   ▼                   ▼
    ┌─────────────┐       ┌─────────────┐     ┌─────────────┐     ┌─────────────┐
    │ RealtimeHub │       │  Document   │     │  Identity/  │     │  Pending    │
    │  (rooms)    │       │   Store     │     │ Grant Store │     │   Queue     │
    └─────────────┘       └─────────────┘     └─────────────┘     └─────────────┘
                                 └───────────────────┴───────────────────┘
                                               SQLite (WAL)

Invariants:
    - The server stores are the system of record; client caches are advisory
    - Documents are opaque JSON; only collection/item ids are interpreted
    - At most one grant per (resource_type, resource_id, invited_email)
    - Real-time notifications are advisory, receivers must re-load

How to change safely:
    - Keep the storage key format stable (identity:<id>:<name>)
    - New item types must be added to the item type map explicitly
    - Schema changes must be additive (new columns with defaults)

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
