"""Delivery coordinator.

Binds packages to licenses and gets them onto devices, either pushed over
the device's live socket or fetched later through a download grant: a
random token that maps to a materialized artifact until it expires.

Assignment and delivery are decoupled.  A device that comes back online
is not re-sent packages assigned while it was away; the operator issues a
new ``assign``/``send_now`` or the device asks for a link.
"""

from __future__ import annotations

import logging
import os
import secrets
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

from courier.db import get_db
from courier.delivery.licenses import LicenseLedger, LicenseResult
from courier.delivery.packages import Package, PackageStore
from courier.devices.channel import DEVICE_ROOM, ChannelBus
from courier.devices.presence import DeviceIdentity, PresenceRegistry
from courier.errors import Outcome, StorageError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = float(os.environ.get("COURIER_GRANT_TTL_MINUTES", "360")) * 60
PUBLIC_URL = os.environ.get("COURIER_PUBLIC_URL", "")


@dataclass
class DownloadGrant:
    token: str
    package_ref: str
    file_path: str
    file_size: int
    target_device_id: str | None
    target_transport_id: str | None
    issued_at: float
    expires_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DownloadGrant:
        return cls(**{k: row[k] for k in row.keys()})

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("file_path")
        return data


@dataclass
class AssignResult:
    outcome: Outcome
    package: Package | None = None
    delivered: bool = False
    device_id: str | None = None
    transport_id: str | None = None
    reason: str | None = None


@dataclass
class SendResult:
    outcome: Outcome
    package: Package | None = None
    device_id: str | None = None
    transport_id: str | None = None
    reason: str | None = None


@dataclass
class GrantResult:
    outcome: Outcome
    grant: DownloadGrant | None = None
    url: str | None = None
    package: Package | None = None
    delivered: bool = False
    reason: str | None = None


@dataclass
class RedeemResult:
    outcome: Outcome
    path: Path | None = None
    filename: str | None = None
    reason: str | None = None


class DeliveryCoordinator:
    """License validation, package assignment, push delivery and download grants."""

    def __init__(
        self,
        presence: PresenceRegistry,
        bus: ChannelBus,
        ledger: LicenseLedger,
        packages: PackageStore,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.presence = presence
        self.bus = bus
        self.ledger = ledger
        self.packages = packages
        self.default_ttl = default_ttl
        self._clock = clock
        self._grant_lock = threading.Lock()

    # ── Licenses ───────────────────────────────────────────────────

    def validate_license(
        self,
        key: str,
        device_id: str,
        display_name: str = "",
        model: str = "",
    ) -> LicenseResult:
        """Run the activation rules and mark the device authenticated on success."""
        result = self.ledger.validate(key, device_id, display_name, model)
        if result.accepted:
            identity = DeviceIdentity.model_construct(
                device_id=result.record.bound_device_id,
                display_name=display_name or "",
                model=model or "",
            )
            self.presence.on_authenticate(result.record.bound_device_id, result.record.key, identity)
        return result

    # ── Push delivery ──────────────────────────────────────────────

    async def assign(self, license_key: str, package_ref: str) -> AssignResult:
        """Bind a package to a license and push it if the device is online."""
        if self.ledger.get(license_key) is None:
            return AssignResult(Outcome.NOT_FOUND, reason="License not found")
        package = self.packages.get(package_ref)
        if package is None:
            return AssignResult(Outcome.NOT_FOUND, reason="Package not found")

        record = self.ledger.set_assignment(license_key, package_ref)
        if record is None:
            return AssignResult(Outcome.NOT_FOUND, reason="Package not found")

        transport_id = None
        if record.bound_device_id:
            transport_id = await self._push_package(record.bound_device_id, package)

        logger.info(
            "Assigned %s to license %s (device %s, delivered=%s)",
            package_ref, license_key, record.bound_device_id, transport_id is not None,
        )
        return AssignResult(
            Outcome.OK,
            package=package,
            delivered=transport_id is not None,
            device_id=record.bound_device_id,
            transport_id=transport_id,
        )

    async def send_now(self, license_key: str, package_ref: str) -> SendResult:
        """Push a package to the license's device without recording an assignment."""
        record = self.ledger.get(license_key)
        if record is None:
            return SendResult(Outcome.NOT_FOUND, reason="License not found")
        package = self.packages.get(package_ref)
        if package is None:
            return SendResult(Outcome.NOT_FOUND, reason="Package not found")
        if not record.bound_device_id:
            return SendResult(
                Outcome.NO_ONLINE_TARGET, package=package, reason="License is not bound to a device"
            )

        transport_id = await self._push_package(record.bound_device_id, package)
        if transport_id is None:
            return SendResult(
                Outcome.NO_ONLINE_TARGET,
                package=package,
                device_id=record.bound_device_id,
                reason="Device not connected",
            )
        return SendResult(
            Outcome.OK, package=package, device_id=record.bound_device_id, transport_id=transport_id
        )

    async def _push_package(self, device_id: str, package: Package) -> str | None:
        transport_id = self.presence.resolve_transport(device_id)
        if transport_id is None:
            return None
        sent = await self.bus.send(transport_id, {
            "type": "PACKAGE_DELIVERY",
            "package_ref": package.id,
            "display_name": package.name,
            "size": package.size_bytes,
            "kind": package.kind,
            "variant": package.variant,
            "version": package.version,
        })
        return transport_id if sent else None

    # ── Download grants ────────────────────────────────────────────

    def issue_download_grant(
        self,
        package_ref: str,
        ttl: float | None = None,
        base_url: str = "",
        device_id: str | None = None,
        transport_id: str | None = None,
    ) -> GrantResult:
        """Materialize a package and record a time-boxed token for it.

        ``ttl`` is in seconds; missing or non-positive values fall back to
        the default (six hours unless configured).
        """
        self.prune_expired()
        package = self.packages.get(package_ref)
        if package is None:
            return GrantResult(Outcome.NOT_FOUND, reason="Package not found")

        artifact = self.packages.materialize(package)
        ttl = ttl if ttl and ttl > 0 else self.default_ttl
        now = self._clock()
        grant = DownloadGrant(
            token=secrets.token_hex(16),
            package_ref=package.id,
            file_path=str(artifact.path),
            file_size=artifact.size,
            target_device_id=device_id,
            target_transport_id=transport_id,
            issued_at=now,
            expires_at=now + ttl,
        )

        with self._grant_lock:
            db = get_db()
            try:
                with db:
                    db.execute(
                        """INSERT INTO download_grants
                           (token, package_ref, file_path, file_size, target_device_id,
                            target_transport_id, issued_at, expires_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        (grant.token, grant.package_ref, grant.file_path, grant.file_size,
                         grant.target_device_id, grant.target_transport_id,
                         grant.issued_at, grant.expires_at),
                    )
            except sqlite3.Error as exc:
                artifact.path.unlink(missing_ok=True)
                raise StorageError(f"Could not record grant for {package_ref}: {exc}") from exc

        url = f"{(base_url or PUBLIC_URL).rstrip('/')}/download/{grant.token}"
        logger.info(
            "Issued grant for %s (%d bytes, ttl %.0fs, target %s)",
            package.id, artifact.size, ttl, device_id or transport_id or "-",
        )
        return GrantResult(Outcome.OK, grant=grant, url=url, package=package)

    async def send_link(
        self,
        package_ref: str,
        device_id: str | None = None,
        transport_id: str | None = None,
        ttl: float | None = None,
        base_url: str = "",
    ) -> GrantResult:
        """Issue a grant for an online device and push it the download link.

        The target is looked up by transport id first, then by device id.
        """
        if self.packages.get(package_ref) is None:
            return GrantResult(Outcome.NOT_FOUND, reason="Package not found")

        target_transport = None
        target_device = None
        if transport_id:
            conn = self.bus.get(transport_id)
            if conn is not None and conn.room == DEVICE_ROOM:
                target_transport = transport_id
                target_device = self.presence.device_for_transport(transport_id)
        if target_transport is None and device_id:
            target_transport = self.presence.resolve_transport(device_id)
            target_device = device_id if target_transport else None
        if target_transport is None:
            return GrantResult(Outcome.NO_ONLINE_TARGET, reason="Device not connected")

        result = self.issue_download_grant(
            package_ref, ttl=ttl, base_url=base_url,
            device_id=target_device, transport_id=target_transport,
        )
        if result.outcome != Outcome.OK:
            return result

        package, grant = result.package, result.grant
        result.delivered = await self.bus.send(target_transport, {
            "type": "PACKAGE_LINK",
            "package_ref": package.id,
            "display_name": package.name,
            "kind": package.kind,
            "variant": package.variant,
            "version": package.version,
            "size": grant.file_size,
            "url": result.url,
            "token": grant.token,
            "expires_at": grant.expires_at,
        })
        return result

    def redeem(self, token: str) -> RedeemResult:
        """Resolve a token to its artifact.  Grants stay valid until they expire."""
        retired = self.prune_expired()
        if token in retired:
            return RedeemResult(Outcome.EXPIRED, reason="Link expired")

        grant = self.get_grant(token)
        if grant is None:
            return RedeemResult(Outcome.NOT_FOUND, reason="Invalid link")
        if self._clock() > grant.expires_at:
            return RedeemResult(Outcome.EXPIRED, reason="Link expired")
        path = Path(grant.file_path)
        if not path.is_file():
            return RedeemResult(Outcome.NOT_FOUND, reason="Artifact not available")
        return RedeemResult(Outcome.OK, path=path, filename=path.name)

    def get_grant(self, token: str) -> DownloadGrant | None:
        try:
            row = get_db().execute(
                "SELECT * FROM download_grants WHERE token = ?", (token,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not read grant: {exc}") from exc
        return DownloadGrant.from_row(row) if row else None

    def list_grants(self) -> list[DownloadGrant]:
        try:
            rows = get_db().execute("SELECT * FROM download_grants ORDER BY issued_at").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not list grants: {exc}") from exc
        return [DownloadGrant.from_row(r) for r in rows]

    def prune_expired(self) -> list[str]:
        """Delete every grant past its expiry along with its artifact.

        Returns the tokens that were retired.
        """
        now = self._clock()
        with self._grant_lock:
            db = get_db()
            try:
                with db:
                    rows = db.execute(
                        "SELECT token, file_path FROM download_grants WHERE expires_at < ?", (now,)
                    ).fetchall()
                    db.execute("DELETE FROM download_grants WHERE expires_at < ?", (now,))
            except sqlite3.Error as exc:
                raise StorageError(f"Grant pruning failed: {exc}") from exc

        for row in rows:
            _remove_artifact(row["file_path"])
        if rows:
            logger.info("Pruned %d expired grant(s)", len(rows))
        return [row["token"] for row in rows]

    # ── Catalogue cascade ──────────────────────────────────────────

    def remove_package(self, package_ref: str) -> int | None:
        """Delete a package, its outstanding grants and every license pointer to it.

        Returns the number of licenses whose assignment was cleared, or
        ``None`` if the package is unknown.
        """
        if self.packages.get(package_ref) is None:
            return None
        with self._grant_lock:
            db = get_db()
            try:
                with db:
                    rows = db.execute(
                        "SELECT file_path FROM download_grants WHERE package_ref = ?", (package_ref,)
                    ).fetchall()
                    db.execute("DELETE FROM download_grants WHERE package_ref = ?", (package_ref,))
                    cleared = self.ledger.clear_package_assignments(package_ref, conn=db)
                    self.packages.delete(package_ref, conn=db)
            except sqlite3.Error as exc:
                raise StorageError(f"Could not remove package {package_ref}: {exc}") from exc

        for row in rows:
            _remove_artifact(row["file_path"])
        logger.info(
            "Removed package %s (%d license assignment(s) cleared, %d grant(s) retired)",
            package_ref, cleared, len(rows),
        )
        return cleared


def _remove_artifact(file_path: str) -> None:
    try:
        Path(file_path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove artifact %s: %s", file_path, exc)
