"""Courier hub.

Owns the process-wide presence and panel registries, the bus, the ledger,
the catalogue and the coordinator, and wires presence changes to snapshot
broadcasts.  The server and the admin API share one instance through
:func:`get_hub`.
"""

from __future__ import annotations

import asyncio
import logging

from courier.auth import seed_admin
from courier.db import get_db, init_db
from courier.delivery.coordinator import DeliveryCoordinator
from courier.delivery.licenses import LicenseLedger
from courier.delivery.packages import PackageStore
from courier.devices.channel import ChannelBus
from courier.devices.panels import PanelRegistry
from courier.devices.presence import GRACE_SECONDS, DeviceSession, PresenceRegistry, PresenceState
from courier.scheduler import RESYNC_SECONDS, ResyncScheduler, snapshot_message

logger = logging.getLogger(__name__)


class CourierHub:
    """Central wiring for all device and delivery state."""

    def __init__(
        self,
        grace_seconds: float = GRACE_SECONDS,
        resync_seconds: float = RESYNC_SECONDS,
    ) -> None:
        init_db()
        seed_admin(get_db())
        self.presence = PresenceRegistry(grace_seconds=grace_seconds)
        self.bus = ChannelBus()
        self.panels = PanelRegistry()
        self.ledger = LicenseLedger()
        self.packages = PackageStore()
        self.delivery = DeliveryCoordinator(self.presence, self.bus, self.ledger, self.packages)
        self.resync = ResyncScheduler(self.presence, self.bus, interval_seconds=resync_seconds)
        self.presence.on_change(self._on_presence_change)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        await self.resync.start()
        logger.info("Courier hub started")

    async def stop(self) -> None:
        await self.resync.stop()
        logger.info("Courier hub stopped")

    def broadcast_panel_list(self) -> int:
        """Tell every socket which panels are currently known."""
        self.panels.prune()
        return self.bus.broadcast({"type": "PANEL_LIST", "panels": self.panels.ids()})

    # ── Internal ───────────────────────────────────────────────────

    def _on_presence_change(self, session: DeviceSession, previous: PresenceState | None) -> None:
        """Broadcast a fresh snapshot after every presence mutation."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop (CLI or sync test): nobody is attached to receive it.
            return
        self.bus.broadcast(snapshot_message(self.presence))


_hub: CourierHub | None = None


def get_hub() -> CourierHub:
    global _hub
    if _hub is None:
        _hub = CourierHub()
    return _hub


def set_hub(hub: CourierHub | None) -> None:
    """Replace the process-wide hub (useful for tests)."""
    global _hub
    _hub = hub
