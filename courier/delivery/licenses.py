"""License ledger: activation rules for one-time license keys.

A key is bound to the first device that validates it.  Re-validating from
the same device refreshes the activation metadata; any other device is
refused until an operator clears the binding.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from courier.db import get_db
from courier.errors import Outcome, StorageError

logger = logging.getLogger(__name__)


@dataclass
class LicenseRecord:
    key: str
    activated: bool = False
    bound_device_id: str | None = None
    activated_at: str | None = None
    activated_by_name: str | None = None
    activated_by_model: str | None = None
    assigned_package_ref: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LicenseRecord:
        return cls(
            key=row["key"],
            activated=bool(row["activated"]),
            bound_device_id=row["bound_device_id"],
            activated_at=row["activated_at"],
            activated_by_name=row["activated_by_name"],
            activated_by_model=row["activated_by_model"],
            assigned_package_ref=row["assigned_package_ref"],
        )


@dataclass
class LicenseResult:
    outcome: Outcome
    record: LicenseRecord | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == Outcome.OK


def normalize_license_entry(entry: Any) -> dict | None:
    """Turn a legacy license entry into a single record shape.

    Older stores hold either a bare key string or an object carrying the
    key under ``key`` or ``license`` plus optional activation
    fields.  Returns ``None`` for entries without a usable key.
    """
    if isinstance(entry, str):
        key = entry.strip()
        return {"key": key, "activated": False, "bound_device_id": None} if key else None
    if not isinstance(entry, dict):
        return None
    key = entry.get("key") or entry.get("license")
    if not isinstance(key, str) or not key.strip():
        return None
    device_id = entry.get("bound_device_id") or entry.get("deviceId")
    return {
        "key": key.strip(),
        "activated": bool(entry.get("activated")) and bool(device_id),
        "bound_device_id": device_id or None,
    }


class LicenseLedger:
    """Read/modify/write access to license records."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    # ── Activation ─────────────────────────────────────────────────

    def validate(
        self,
        key: str,
        device_id: str,
        display_name: str = "",
        model: str = "",
    ) -> LicenseResult:
        """Apply the activation rules for ``key`` on behalf of ``device_id``."""
        key = (key or "").strip()
        device_id = (device_id or "").strip()
        if not key or not device_id:
            return LicenseResult(Outcome.INVALID, reason="key and device_id are required")

        with self._lock:
            db = get_db()
            try:
                with db:
                    row = db.execute("SELECT * FROM licenses WHERE key = ?", (key,)).fetchone()
                    if row is None:
                        return LicenseResult(Outcome.NOT_FOUND, reason="License not found")
                    record = LicenseRecord.from_row(row)
                    if (
                        record.activated
                        and record.bound_device_id
                        and record.bound_device_id != device_id
                    ):
                        logger.warning(
                            "License %s refused for %s: bound to %s",
                            key, device_id, record.bound_device_id,
                        )
                        return LicenseResult(
                            Outcome.CONFLICT,
                            record=record,
                            reason="License already bound to another device",
                        )

                    now = datetime.now(timezone.utc).isoformat()
                    db.execute(
                        """UPDATE licenses
                           SET activated = TRUE, bound_device_id = ?, activated_at = ?,
                               activated_by_name = ?, activated_by_model = ?
                           WHERE key = ?""",
                        (device_id, now, display_name, model, key),
                    )
                    db.execute(
                        """INSERT INTO activation_log (license_key, device_id, display_name, model, created_at)
                           VALUES (?, ?, ?, ?, ?)""",
                        (key, device_id, display_name, model, now),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"License validation failed for {key}: {exc}") from exc

        record.activated = True
        record.bound_device_id = device_id
        record.activated_at = now
        record.activated_by_name = display_name
        record.activated_by_model = model
        logger.info("License %s activated for %s (%s)", key, device_id, display_name)
        return LicenseResult(Outcome.OK, record=record)

    def clear_binding(self, key: str) -> LicenseResult:
        """Release a key so another device may activate it."""
        with self._lock:
            db = get_db()
            try:
                with db:
                    cur = db.execute(
                        """UPDATE licenses
                           SET activated = FALSE, bound_device_id = NULL, activated_at = NULL,
                               activated_by_name = NULL, activated_by_model = NULL
                           WHERE key = ?""",
                        (key,),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"Could not clear license {key}: {exc}") from exc
        if cur.rowcount == 0:
            return LicenseResult(Outcome.NOT_FOUND, reason="License not found")
        logger.info("License %s binding cleared", key)
        return LicenseResult(Outcome.OK, record=self.get(key))

    # ── Assignment ─────────────────────────────────────────────────

    def set_assignment(self, key: str, package_ref: str | None) -> LicenseRecord | None:
        """Record the package bound to a license.

        Returns ``None`` if the key is unknown or the package no longer
        exists at write time.
        """
        with self._lock:
            db = get_db()
            try:
                with db:
                    if package_ref is None:
                        cur = db.execute(
                            "UPDATE licenses SET assigned_package_ref = NULL WHERE key = ?",
                            (key,),
                        )
                    else:
                        cur = db.execute(
                            """UPDATE licenses SET assigned_package_ref = ?
                               WHERE key = ? AND EXISTS (SELECT 1 FROM packages WHERE id = ?)""",
                            (package_ref, key, package_ref),
                        )
            except sqlite3.Error as exc:
                raise StorageError(f"Could not assign {package_ref} to {key}: {exc}") from exc
            if cur.rowcount == 0:
                return None
            return self.get(key)

    def clear_package_assignments(self, package_ref: str, conn: sqlite3.Connection | None = None) -> int:
        """Drop ``package_ref`` from every license that points at it.

        When ``conn`` is given the update joins the caller's transaction.
        """
        db = conn or get_db()
        with self._lock:
            try:
                cur = db.execute(
                    "UPDATE licenses SET assigned_package_ref = NULL WHERE assigned_package_ref = ?",
                    (package_ref,),
                )
                if conn is None:
                    db.commit()
            except sqlite3.Error as exc:
                if conn is None:
                    db.rollback()
                raise StorageError(f"Could not clear assignments of {package_ref}: {exc}") from exc
        return cur.rowcount

    # ── Records ────────────────────────────────────────────────────

    def get(self, key: str) -> LicenseRecord | None:
        try:
            row = get_db().execute("SELECT * FROM licenses WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not read license {key}: {exc}") from exc
        return LicenseRecord.from_row(row) if row else None

    def list_licenses(self) -> list[LicenseRecord]:
        try:
            rows = get_db().execute("SELECT * FROM licenses ORDER BY created_at, key").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not list licenses: {exc}") from exc
        return [LicenseRecord.from_row(r) for r in rows]

    def add(self, key: str) -> bool:
        """Insert an unbound key.  Returns ``False`` if it already exists."""
        return self.import_entries([key]) == 1

    def import_entries(self, entries: Iterable[Any]) -> int:
        """Load legacy license entries, skipping keys already present.

        Returns the number of new records written.
        """
        normalized = [n for n in (normalize_license_entry(e) for e in entries) if n]
        added = 0
        with self._lock:
            db = get_db()
            try:
                with db:
                    for entry in normalized:
                        cur = db.execute(
                            """INSERT OR IGNORE INTO licenses (key, activated, bound_device_id)
                               VALUES (?, ?, ?)""",
                            (entry["key"], entry["activated"], entry["bound_device_id"]),
                        )
                        added += cur.rowcount
            except sqlite3.Error as exc:
                raise StorageError(f"License import failed: {exc}") from exc
        if added:
            logger.info("Imported %d license(s)", added)
        return added
