"""Periodic presence resync.

Every few seconds the full device list is broadcast to all attached
sockets so panels that missed an update converge on the current state.
"""

from __future__ import annotations

import asyncio
import logging
import os

from courier.devices.channel import ChannelBus
from courier.devices.presence import PresenceRegistry

logger = logging.getLogger(__name__)

RESYNC_SECONDS = float(os.environ.get("COURIER_RESYNC_SECONDS", "3"))


def snapshot_message(presence: PresenceRegistry) -> dict:
    return {"type": "PRESENCE_SNAPSHOT", "devices": presence.views()}


class ResyncScheduler:
    """Background task broadcasting presence snapshots at a fixed interval."""

    def __init__(
        self,
        presence: PresenceRegistry,
        bus: ChannelBus,
        interval_seconds: float = RESYNC_SECONDS,
    ) -> None:
        self.presence = presence
        self.bus = bus
        self.interval = interval_seconds
        self.ticks = 0
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the background resync loop."""
        if self._running:
            logger.warning("Resync scheduler is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Resync scheduler started (interval=%.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the background resync loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Resync scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> int:
        """Broadcast one snapshot; returns the number of receivers."""
        self.ticks += 1
        return self.bus.broadcast(snapshot_message(self.presence))

    async def _loop(self) -> None:
        while self._running:
            try:
                self.run_once()
            except Exception as exc:
                logger.error("Resync tick failed: %s", exc)
            await asyncio.sleep(self.interval)
