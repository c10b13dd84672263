"""
Best-effort real-time notification hub.

Clients open a WebSocket, join rooms keyed by their user id or by
"space:<id>", and receive {"event": "shared_update", "type", "data"}
messages. Notifications are advisory: there is no ordering, no replay and no
delivery guarantee, so receivers must still re-load to get authoritative
content.

Invariants:
    - A failed send drops the socket from every room
    - Publishing never raises to the caller
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any

from aiohttp import WSMsgType, web

from .auth import Identity

logger = logging.getLogger(__name__)

SHARED_UPDATE_EVENT = "shared_update"


def space_room(space_id: str) -> str:
    return f"space:{space_id}"


class RealtimeHub:
    """Room membership and fan-out for WebSocket connections.

    Example:
        >>> hub = RealtimeHub()
        >>> hub.join(ws, "user-1")
        >>> await hub.publish("user-1", "task", {"id": "t1"})
        1
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[Any]] = defaultdict(set)

    def join(self, ws: Any, room: str) -> None:
        self._rooms[room].add(ws)
        logger.debug("Socket joined room", extra={"room": room})

    def leave_all(self, ws: Any) -> None:
        for room in list(self._rooms):
            members = self._rooms[room]
            members.discard(ws)
            if not members:
                del self._rooms[room]

    def members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def publish(
        self,
        room: str,
        item_type: str,
        data: Any,
        exclude: Any = None,
    ) -> int:
        """Send a shared_update to every socket in a room.

        Returns:
            Number of sockets the message was handed to
        """
        message = {"event": SHARED_UPDATE_EVENT, "type": item_type, "data": data}
        delivered = 0
        for ws in list(self._rooms.get(room, ())):
            if ws is exclude:
                continue
            try:
                await ws.send_json(message)
                delivered += 1
            except (ConnectionError, RuntimeError) as e:
                logger.warning(f"Dropping socket from room {room}: {e}")
                self.leave_all(ws)
        return delivered

    def can_join(self, identity: Identity | None, room: str) -> bool:
        """A caller may join its own user room or any space room."""
        if identity is None:
            return False
        return room == identity.id or room.startswith("space:")

    async def handle(self, request: web.Request, identity: Identity | None) -> web.WebSocketResponse:
        """Serve one WebSocket connection until it closes."""
        ws = web.WebSocketResponse(heartbeat=25.0)
        await ws.prepare(request)
        logger.info(
            "Socket connected",
            extra={"user_id": identity.id if identity else None},
        )

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._on_message(ws, identity, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Socket error: {ws.exception()}")
        finally:
            self.leave_all(ws)
            logger.info(
                "Socket disconnected",
                extra={"user_id": identity.id if identity else None},
            )

        return ws

    async def _on_message(self, ws: Any, identity: Identity | None, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON socket message")
            return
        if not isinstance(message, dict):
            return

        action = message.get("action")
        if action == "join_room":
            room = str(message.get("room") or "")
            if self.can_join(identity, room):
                self.join(ws, room)
            else:
                logger.info("Rejected room join", extra={"room": room})
        elif action == "realtime_update":
            space_id = message.get("spaceId")
            data = message.get("data")
            if not space_id or not isinstance(data, dict) or identity is None:
                return
            await self.publish(space_room(space_id), str(message.get("type")), data, exclude=ws)
