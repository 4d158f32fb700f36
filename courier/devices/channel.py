"""In-process message bus over the live WebSocket connections.

Every accepted socket is attached under a transport id and a room
(``device`` or ``panel``).  Targeted sends are awaited; broadcasts are
fire-and-forget so one slow receiver never holds up the sender.

Each connection drains its broadcasts through one outbox task at a time.
Snapshot-style messages (see ``REPLACEABLE_TYPES``) replace any queued
message of the same type, and the outbox is capped at ``MAX_BACKLOG``, so a
receiver that stops reading costs a bounded amount of memory.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from typing import Any

logger = logging.getLogger(__name__)

DEVICE_ROOM = "device"
PANEL_ROOM = "panel"

MAX_BACKLOG = 32
REPLACEABLE_TYPES = frozenset({"PRESENCE_SNAPSHOT", "PANEL_LIST"})


class Connection:
    """A socket attached to the bus, plus its bookkeeping."""

    def __init__(self, websocket: Any, transport_id: str, room: str) -> None:
        self.websocket = websocket
        self.transport_id = transport_id
        self.room = room
        self.connected_at = time.time()
        self.label: str | None = None
        self._outbox: deque[dict] = deque()
        self._flusher: asyncio.Task | None = None

    async def send(self, message: dict) -> None:
        """Send a JSON message over the socket."""
        await self.websocket.send_json(message)

    @property
    def backlog(self) -> int:
        return len(self._outbox)

    def enqueue(self, message: dict) -> asyncio.Task | None:
        """Queue a broadcast message; returns the outbox task if one was started."""
        msg_type = message.get("type")
        if msg_type in REPLACEABLE_TYPES:
            self._outbox = deque(m for m in self._outbox if m.get("type") != msg_type)
        if len(self._outbox) >= MAX_BACKLOG:
            dropped = self._outbox.popleft()
            logger.warning(
                "Outbox full for %s, dropping %s", self.transport_id, dropped.get("type")
            )
        self._outbox.append(message)
        if self._flusher is not None and not self._flusher.done():
            return None
        self._flusher = asyncio.get_running_loop().create_task(self._flush())
        return self._flusher

    async def _flush(self) -> None:
        while self._outbox:
            message = self._outbox.popleft()
            try:
                await self.send(message)
            except Exception as exc:
                logger.debug(
                    "Broadcast of %s to %s dropped: %s", message.get("type"), self.transport_id, exc
                )
                self._outbox.clear()
                return


class ChannelBus:
    """Room- and target-addressed delivery to attached sockets."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}
        self._pending: set[asyncio.Task] = set()

    def attach(self, websocket: Any, room: str = DEVICE_ROOM, transport_id: str | None = None) -> Connection:
        transport_id = transport_id or f"tr-{uuid.uuid4().hex[:12]}"
        conn = Connection(websocket, transport_id, room)
        with self._lock:
            self._connections[transport_id] = conn
        logger.debug("Attached %s to room %s", transport_id, room)
        return conn

    def detach(self, transport_id: str) -> Connection | None:
        with self._lock:
            conn = self._connections.pop(transport_id, None)
        if conn is not None:
            logger.debug("Detached %s from room %s", transport_id, conn.room)
        return conn

    def get(self, transport_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(transport_id)

    def connections(self, room: str | None = None) -> list[Connection]:
        with self._lock:
            conns = list(self._connections.values())
        if room is None:
            return conns
        return [c for c in conns if c.room == room]

    async def send(self, transport_id: str, message: dict) -> bool:
        """Deliver a message to one transport.

        Returns ``False`` when the transport is not attached or the socket
        refused the write.
        """
        conn = self.get(transport_id)
        if conn is None:
            return False
        try:
            await conn.send(message)
        except Exception as exc:
            logger.warning("Send of %s to %s failed: %s", message.get("type"), transport_id, exc)
            return False
        return True

    def broadcast(self, message: dict, room: str | None = None) -> int:
        """Queue a message to every connection (optionally one room).

        Returns the number of receivers addressed.  Must be called with a
        running event loop.
        """
        targets = self.connections(room)
        for conn in targets:
            task = conn.enqueue(message)
            if task is not None:
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        return len(targets)

    async def drain(self) -> None:
        """Wait for queued broadcasts to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
