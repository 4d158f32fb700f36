"""Device presence registry.

Keeps one canonical record per device identity and maps the transient
WebSocket transports onto it.  A dropped transport does not take the
device offline straight away: an offline check is scheduled after a grace
interval and only applies if no newer transport has claimed the device in
the meantime, so a quick reconnect never shows up as an offline flicker.
Devices that connect without an id get an ``anon-<transport>`` record that
is dropped once it goes offline.

State machine::

    (none) ──connect──▶ online ──grace timer──▶ offline
                          │  ▲                     │
                authenticate  └──────connect───────┘
                          ▼
                    authenticated
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

GRACE_SECONDS = float(os.environ.get("COURIER_GRACE_SECONDS", "5"))


class PresenceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    AUTHENTICATED = "authenticated"


class DeviceIdentity(BaseModel):
    """Identity a device declares when it opens a transport."""

    device_id: str | None = Field(default=None, max_length=128)
    display_name: str = Field(default="Unnamed", max_length=128)
    model: str = Field(default="", max_length=128)
    app_version: str = Field(default="", max_length=64)
    source_address: str | None = None


@dataclass
class DeviceSession:
    """Canonical presence record for one device."""

    device_id: str
    transport_id: str | None = None
    display_name: str = "Unnamed"
    model: str = ""
    app_version: str = ""
    source_address: str | None = None
    license_key: str | None = None
    state: PresenceState = PresenceState.ONLINE
    last_seen_at: float = field(default_factory=time.time)
    anonymous: bool = False
    generation: int = 0

    def to_view(self) -> dict:
        """JSON-ready view used for broadcasts and the status endpoint."""
        view = asdict(self)
        view.pop("generation")
        view["state"] = self.state.value
        view["last_seen_at"] = datetime.fromtimestamp(
            self.last_seen_at, tz=timezone.utc
        ).isoformat()
        return view


ChangeCallback = Callable[[DeviceSession, PresenceState | None], None]


class PresenceRegistry:
    """Single authoritative view of which devices are reachable."""

    def __init__(self, grace_seconds: float = GRACE_SECONDS) -> None:
        self.grace_seconds = grace_seconds
        self._lock = threading.RLock()
        self._records: dict[str, DeviceSession] = {}
        self._transports: dict[str, str] = {}  # transport_id -> device_id
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._callbacks: list[ChangeCallback] = []

    # ── Listeners ──────────────────────────────────────────────────

    def on_change(self, callback: ChangeCallback) -> None:
        """Register a callback fired after every presence mutation.

        The callback receives a copy of the updated record and the state it
        had before (``None`` for a new record).
        """
        self._callbacks.append(callback)

    def _notify(self, session: DeviceSession, previous: PresenceState | None) -> None:
        for callback in self._callbacks:
            try:
                callback(session, previous)
            except Exception:
                logger.exception("Presence listener failed for %s", session.device_id)

    # ── Transport events ───────────────────────────────────────────

    def on_connect(self, transport_id: str, identity: DeviceIdentity) -> DeviceSession:
        """Bind a new transport to its device, treating a known id as a reconnect."""
        device_id = identity.device_id or f"anon-{transport_id}"
        with self._lock:
            record = self._records.get(device_id)
            previous = record.state if record else None
            if record is None:
                record = DeviceSession(device_id=device_id, anonymous=not identity.device_id)
                self._records[device_id] = record
                logger.info("Device online: %s via %s", device_id, transport_id)
            else:
                if record.transport_id and record.transport_id != transport_id:
                    self._cancel_timer(record.transport_id)
                logger.info(
                    "Device reconnected: %s via %s (was %s)",
                    device_id, transport_id, record.transport_id,
                )
            record.transport_id = transport_id
            record.state = PresenceState.ONLINE
            record.display_name = identity.display_name
            record.model = identity.model
            record.app_version = identity.app_version
            record.source_address = identity.source_address
            record.last_seen_at = time.time()
            record.generation += 1
            self._transports[transport_id] = device_id
            result = replace(record)
        self._notify(result, previous)
        return result

    def on_disconnect(self, transport_id: str) -> bool:
        """Schedule the deferred offline check for a closed transport.

        Returns ``True`` when a check was scheduled.  Must be called from
        the event loop thread; without a running loop ``RuntimeError`` is
        raised and the transport stays registered.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            device_id = self._transports.pop(transport_id, None)
            if device_id is None:
                return False
            record = self._records.get(device_id)
            if record is None or record.transport_id != transport_id:
                logger.debug(
                    "Transport %s for %s already superseded", transport_id, device_id
                )
                return False
            self._cancel_timer(transport_id)
            self._timers[transport_id] = loop.call_later(
                self.grace_seconds,
                self._expire,
                device_id,
                transport_id,
                record.generation,
            )
        logger.debug(
            "Transport %s closed for %s, offline check in %.1fs",
            transport_id, device_id, self.grace_seconds,
        )
        return True

    def _expire(self, device_id: str, transport_id: str, generation: int) -> None:
        with self._lock:
            self._timers.pop(transport_id, None)
            record = self._records.get(device_id)
            if record is None or record.generation != generation:
                return
            if record.transport_id not in (transport_id, None):
                return
            if record.state == PresenceState.OFFLINE:
                return
            previous = record.state
            record.state = PresenceState.OFFLINE
            record.transport_id = None
            result = replace(record)
            if record.anonymous:
                # Nothing can reconnect to an anonymous record
                del self._records[device_id]
        logger.info("Device offline: %s", device_id)
        self._notify(result, previous)

    def _cancel_timer(self, transport_id: str) -> None:
        handle = self._timers.pop(transport_id, None)
        if handle is not None:
            handle.cancel()

    def touch(self, transport_id: str) -> bool:
        """Refresh ``last_seen_at`` for the device behind a transport."""
        with self._lock:
            device_id = self._transports.get(transport_id)
            record = self._records.get(device_id) if device_id else None
            if record is None:
                return False
            record.last_seen_at = time.time()
            return True

    # ── License binding ────────────────────────────────────────────

    def on_authenticate(
        self,
        device_id: str,
        license_key: str,
        identity: DeviceIdentity | None = None,
    ) -> DeviceSession:
        """Record a validated license against a device, creating a placeholder if unknown."""
        with self._lock:
            record = self._records.get(device_id)
            previous = record.state if record else None
            if record is None:
                record = DeviceSession(device_id=device_id, transport_id=None)
                self._records[device_id] = record
            if identity is not None:
                record.display_name = identity.display_name or record.display_name
                record.model = identity.model or record.model
            record.license_key = license_key
            record.state = PresenceState.AUTHENTICATED
            record.last_seen_at = time.time()
            result = replace(record)
        logger.info("Device %s authenticated with license %s", device_id, license_key)
        self._notify(result, previous)
        return result

    # ── Queries ────────────────────────────────────────────────────

    def snapshot(self) -> list[DeviceSession]:
        """All canonical records in order of first appearance."""
        with self._lock:
            return [replace(r) for r in self._records.values()]

    def views(self) -> list[dict]:
        return [s.to_view() for s in self.snapshot()]

    def get(self, device_id: str) -> DeviceSession | None:
        with self._lock:
            record = self._records.get(device_id)
            return replace(record) if record else None

    def resolve_transport(self, device_id: str) -> str | None:
        """Live transport for a device, or ``None`` if it cannot be pushed to."""
        with self._lock:
            record = self._records.get(device_id)
            if record is None or record.state == PresenceState.OFFLINE:
                return None
            return record.transport_id

    def device_for_transport(self, transport_id: str) -> str | None:
        with self._lock:
            return self._transports.get(transport_id)

    def pending_checks(self) -> int:
        """Number of offline checks waiting to fire."""
        with self._lock:
            return len(self._timers)
