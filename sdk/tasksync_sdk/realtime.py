"""
Real-time notification subscriber.

Joins rooms on the server's /ws endpoint and hands every shared_update
message to a callback. Notifications are advisory: the callback should
re-load the affected document rather than trust the payload.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import aiohttp

from .errors import NotAuthenticatedError, RemoteUnavailableError

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str, Any], Union[None, Awaitable[None]]]

SHARED_UPDATE_EVENT = "shared_update"


class RealtimeSubscriber:
    """WebSocket subscriber for shared_update notifications.

    Example:
        >>> async def on_update(item_type, data):
        ...     await engine.load("tasksync-app-storage")
        >>> subscriber = RealtimeSubscriber(settings.realtime_url, token, on_update)
        >>> await subscriber.connect(rooms=[user_id, "space:s1"])
        >>> await subscriber.run()
    """

    def __init__(
        self,
        url: str,
        token: Optional[str],
        on_update: UpdateCallback,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.on_update = on_update
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self, rooms: Iterable[str] = ()) -> None:
        """Open the socket and join rooms.

        Raises:
            NotAuthenticatedError: If no token is configured
            RemoteUnavailableError: If the socket cannot be opened
        """
        if not self.token:
            raise NotAuthenticatedError()
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            self._ws = await self._session.ws_connect(
                self.url, params={"token": self.token}, heartbeat=25.0
            )
        except aiohttp.ClientError as e:
            raise RemoteUnavailableError(f"WebSocket connect failed: {e}", url=self.url) from e

        for room in rooms:
            await self.join(room)

    async def join(self, room: str) -> None:
        if self._ws is None:
            raise RemoteUnavailableError("WebSocket is not connected", url=self.url)
        await self._ws.send_json({"action": "join_room", "room": room})

    async def publish(self, space_id: str, item_type: str, data: Any) -> None:
        """Broadcast a realtime_update to the other members of a space room."""
        if self._ws is None:
            raise RemoteUnavailableError("WebSocket is not connected", url=self.url)
        await self._ws.send_json(
            {"action": "realtime_update", "type": item_type, "data": data, "spaceId": space_id}
        )

    async def run(self) -> None:
        """Dispatch messages until the socket closes."""
        if self._ws is None:
            raise RemoteUnavailableError("WebSocket is not connected", url=self.url)

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._dispatch(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error: {self._ws.exception()}")
                break

    async def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON message")
            return
        if not isinstance(message, dict) or message.get("event") != SHARED_UPDATE_EVENT:
            return

        try:
            result = self.on_update(message.get("type"), message.get("data"))
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"shared_update callback failed: {e}", exc_info=True)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
