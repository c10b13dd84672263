"""
Client sync engine for TaskSync.

SyncEngine exposes two operations over three stores:

    load(key)            durable cache -> fallback cache -> remote (+ shared view)
    save(key, document)  durable cache, fallback cache, outbox -> remote

The local copy is the working copy. The remote copy is merged into it on
every authenticated load (see merge.py), and the merged result is written
back, so items created offline reach the server on the next load.

Invariants:
    - load/save never raise for remote, decode or quota failures; they log
      and continue with the best data available
    - Without a token nothing is sent to the server
    - Documents are serialized deterministically, so two loads against a
      stable remote return identical documents
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

from .config import SyncSettings
from .errors import (
    QuotaExceededError,
    RemoteUnavailableError,
    SyncError,
)
from .local_cache import FileCache, SqliteCache
from .merge import fold_shared_view, reconcile_collections
from .outbox import Outbox
from .remote import RemoteClient

logger = logging.getLogger(__name__)


def serialize(document: Any) -> str:
    """Compact JSON, the same text for the same document."""
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False)


def has_state(document: Any) -> bool:
    return isinstance(document, dict) and isinstance(document.get("state"), dict)


class SyncEngine:
    """Local-first document sync with merge-on-load.

    Example:
        >>> async with SyncEngine(SyncSettings(), token=token) as engine:
        ...     document = await engine.load("tasksync-app-storage")
        ...     document["state"]["tasks"].append({"id": "t1", "name": "Write report"})
        ...     await engine.save("tasksync-app-storage", document)
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        token: Optional[str] = None,
        remote: Optional[RemoteClient] = None,
        durable: Optional[SqliteCache] = None,
        fallback: Optional[FileCache] = None,
        outbox: Optional[Outbox] = None,
    ) -> None:
        self.settings = settings or SyncSettings()
        cache_dir = Path(self.settings.cache_dir)

        self.remote = remote or RemoteClient(
            self.settings.base_url,
            token=token,
            timeout=self.settings.request_timeout,
        )
        self.durable = durable or SqliteCache(cache_dir / "cache.sqlite")
        self.fallback = fallback or FileCache(
            cache_dir / "fallback", quota_bytes=self.settings.fallback_quota_bytes
        )
        self.outbox = outbox or Outbox(
            cache_dir / "outbox.sqlite",
            self.remote.put_document,
            max_retries=self.settings.outbox_max_retries,
            initial_delay=self.settings.outbox_initial_delay,
            max_delay=self.settings.outbox_max_delay,
        )

    @property
    def authenticated(self) -> bool:
        return self.remote.authenticated

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Resume sending writes queued by a previous process."""
        if self.authenticated:
            await self.outbox.start()

    async def flush(self) -> int:
        """Wait for queued remote writes; returns rows still pending."""
        return await self.outbox.flush()

    async def close(self) -> None:
        await self.outbox.close()
        await self.remote.close()

    # --- Local caches ---

    async def _read_local(self, key: str) -> Optional[str]:
        raw = None
        try:
            raw = await self.durable.get(key)
        except sqlite3.Error as e:
            logger.error(f"Durable cache read failed, falling back: {e}", extra={"key": key})

        if raw is None:
            try:
                raw = await self.fallback.get(key)
            except (OSError, ValueError) as e:
                logger.warning(f"Fallback cache entry unreadable: {e}", extra={"key": key})
            if raw is not None:
                logger.info("Migrating fallback cache entry to durable cache", extra={"key": key})
                try:
                    await self.durable.set(key, raw)
                except sqlite3.Error as e:
                    logger.error(f"Migration to durable cache failed: {e}", extra={"key": key})
        return raw

    async def _write_local(self, key: str, text: str) -> None:
        try:
            await self.durable.set(key, text)
        except sqlite3.Error as e:
            logger.error(f"Durable cache write failed: {e}", extra={"key": key})

        try:
            await self.fallback.set(key, text)
        except QuotaExceededError as e:
            logger.debug(str(e))
        except OSError as e:
            logger.warning(f"Fallback cache write failed: {e}", extra={"key": key})

    # --- Remote ---

    async def _fetch_remote(self, key: str) -> Any:
        """Remote document for key, with the shared view folded in for the primary key.

        Any other SyncError from the document fetch counts as no remote document.

        Raises:
            RemoteUnavailableError: If the document fetch itself failed
        """
        try:
            remote = await self.remote.get_document(key)
        except RemoteUnavailableError:
            raise
        except SyncError as e:
            logger.warning(f"Ignoring remote document: {e}", extra={"key": key})
            remote = None

        if key != self.settings.primary_document_key:
            return remote

        try:
            shared = await self.remote.get_shared_view()
        except SyncError as e:
            logger.warning(f"Failed to fetch shared view: {e}")
            return remote

        return fold_shared_view(remote, shared)

    # --- Operations ---

    async def load(self, key: str) -> Any:
        """Load a document, reconciling the local copy with the remote one."""
        local_raw = await self._read_local(key)
        local = None
        if local_raw is not None:
            try:
                local = json.loads(local_raw)
            except ValueError as e:
                logger.error(f"Local document is not JSON, ignoring it: {e}", extra={"key": key})

        if not self.authenticated:
            return local

        try:
            remote = await self._fetch_remote(key)
        except RemoteUnavailableError as e:
            logger.warning(f"Server sync failed, using local data: {e}", extra={"key": key})
            return local

        if has_state(local):
            if has_state(remote):
                stats = reconcile_collections(local["state"], remote["state"])
                for name, (added, updated) in stats.items():
                    logger.info(
                        f"Merged {added} new, {updated} updated {name} from server",
                        extra={"key": key},
                    )
                merged = serialize(local)
                await self._write_local(key, merged)
                await self.outbox.append(key, merged)
            return local

        if remote is not None:
            await self._write_local(key, serialize(remote))
            return remote

        return local

    async def save(self, key: str, document: Any) -> None:
        """Persist locally and queue the remote write."""
        text = serialize(document)
        await self._write_local(key, text)
        if self.authenticated:
            await self.outbox.append(key, text)

    async def remove(self, key: str) -> None:
        """Forget a document locally (the server copy is kept)."""
        try:
            await self.durable.remove(key)
        except sqlite3.Error as e:
            logger.error(f"Durable cache remove failed: {e}", extra={"key": key})
        await self.fallback.remove(key)
