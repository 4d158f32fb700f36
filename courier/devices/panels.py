"""Registry of operator panels known to the hub.

A panel becomes known either by registering over ``/ws/panel`` or by
posting a heartbeat to ``/api/ping`` (panels that run on a local network
and only report upward).  Socket panels leave when their transport closes;
heartbeat-only panels are dropped once their last ping is older than
``stale_seconds``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

PING_STALE_SECONDS = 120.0


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PanelRecord:
    panel_id: str
    transport_id: str | None = None
    connected_at: str | None = None
    last_ping_at: str | None = None
    source: str | None = None
    devices: int | None = None
    status: str | None = None
    # Monotonic time of the last socket registration or ping
    seen: float = 0.0

    def to_dict(self) -> dict:
        view = asdict(self)
        view.pop("seen")
        return view


class PanelRegistry:
    """Thread-safe map of panel id to :class:`PanelRecord`."""

    def __init__(self, stale_seconds: float = PING_STALE_SECONDS, clock=time.monotonic) -> None:
        self._lock = threading.Lock()
        self._panels: dict[str, PanelRecord] = {}
        self._stale = stale_seconds
        self._clock = clock

    def register(self, panel_id: str, transport_id: str) -> bool:
        """Bind ``panel_id`` to a socket; returns ``True`` if the id is new."""
        with self._lock:
            record = self._panels.get(panel_id)
            is_new = record is None
            if is_new:
                record = self._panels[panel_id] = PanelRecord(panel_id=panel_id)
            elif record.transport_id and record.transport_id != transport_id:
                logger.info("Panel %s moved from %s to %s", panel_id, record.transport_id, transport_id)
            record.transport_id = transport_id
            record.connected_at = _iso_now()
            record.seen = self._clock()
        return is_new

    def unregister_transport(self, transport_id: str) -> str | None:
        """Forget the panel bound to ``transport_id``; returns its id if removed.

        A transport that was superseded by a newer registration of the same
        panel id removes nothing.
        """
        with self._lock:
            for panel_id, record in self._panels.items():
                if record.transport_id == transport_id:
                    del self._panels[panel_id]
                    return panel_id
        return None

    def ping(
        self,
        panel_id: str,
        source: str | None = None,
        devices: int | None = None,
        status: str | None = None,
        timestamp: str | None = None,
    ) -> bool:
        """Record a heartbeat; returns ``True`` if the id was not known yet."""
        with self._lock:
            record = self._panels.get(panel_id)
            is_new = record is None
            if is_new:
                record = self._panels[panel_id] = PanelRecord(panel_id=panel_id)
            record.last_ping_at = timestamp or _iso_now()
            record.source = source
            record.devices = devices
            record.status = status
            record.seen = self._clock()
        logger.debug("Ping from panel %s: %s devices", panel_id, devices)
        return is_new

    def prune(self) -> list[str]:
        """Drop heartbeat-only panels whose last ping is stale."""
        cutoff = self._clock() - self._stale
        with self._lock:
            gone = [
                pid for pid, rec in self._panels.items()
                if rec.transport_id is None and rec.seen < cutoff
            ]
            for pid in gone:
                del self._panels[pid]
        if gone:
            logger.info("Dropped stale panels: %s", ", ".join(gone))
        return gone

    def get(self, panel_id: str) -> PanelRecord | None:
        with self._lock:
            return self._panels.get(panel_id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._panels)

    def views(self) -> list[dict]:
        with self._lock:
            return [rec.to_dict() for rec in self._panels.values()]
