"""Package catalogue.

A package is a folder on the hub's disk registered under a name, kind,
variant and version.  Delivering it means zipping the folder into an
artifact under ``<data_dir>/artifacts`` that a download grant can point at.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
import uuid
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from courier.db import data_dir, get_db
from courier.errors import Outcome, PackageError, StorageError

logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_\-.]")
_REQUIRED_FIELDS = ("name", "kind", "variant", "version", "path")


@dataclass
class Package:
    id: str
    name: str
    kind: str
    variant: str
    version: str
    path: str
    size_bytes: int = 0
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Package:
        return cls(**{k: row[k] for k in row.keys()})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Artifact:
    """A materialized package ready to be served."""

    path: Path
    filename: str
    size: int


def _folder_size(path: Path) -> int:
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def _check_folder(path: str) -> Path:
    folder = Path(path)
    if not folder.is_dir():
        raise PackageError(Outcome.INVALID, f"Path does not exist or is not a folder: {path}")
    return folder


def artifacts_dir() -> Path:
    d = data_dir() / "artifacts"
    d.mkdir(parents=True, exist_ok=True)
    return d


class PackageStore:
    """CRUD over the ``packages`` table plus artifact materialization."""

    # ── Queries ────────────────────────────────────────────────────

    def list_packages(self) -> list[Package]:
        try:
            rows = get_db().execute("SELECT * FROM packages ORDER BY created_at, name").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not list packages: {exc}") from exc
        return [Package.from_row(r) for r in rows]

    def get(self, package_ref: str) -> Package | None:
        try:
            row = get_db().execute("SELECT * FROM packages WHERE id = ?", (package_ref,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not read package {package_ref}: {exc}") from exc
        return Package.from_row(row) if row else None

    # ── Mutations ──────────────────────────────────────────────────

    def create(self, name: str, kind: str, variant: str, version: str, path: str) -> Package:
        values = {"name": name, "kind": kind, "variant": variant, "version": version, "path": path}
        missing = [f for f in _REQUIRED_FIELDS if not str(values[f] or "").strip()]
        if missing:
            raise PackageError(Outcome.INVALID, f"Missing fields: {', '.join(missing)}")
        folder = _check_folder(path)

        package = Package(
            id=f"pkg-{uuid.uuid4().hex[:8]}",
            name=str(name),
            kind=str(kind),
            variant=str(variant),
            version=str(version),
            path=str(folder.resolve()),
            size_bytes=_folder_size(folder),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        db = get_db()
        try:
            with db:
                db.execute(
                    """INSERT INTO packages (id, name, kind, variant, version, path, size_bytes, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (package.id, package.name, package.kind, package.variant,
                     package.version, package.path, package.size_bytes, package.created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise PackageError(Outcome.CONFLICT, f"A package named {name!r} already exists") from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Could not create package {name}: {exc}") from exc

        logger.info("Registered package %s (%s, %d bytes)", package.id, package.name, package.size_bytes)
        return package

    def update(self, package_ref: str, **fields) -> Package:
        """Patch catalogue fields; a new ``path`` is validated and re-measured."""
        updates = {k: v for k, v in fields.items() if k in _REQUIRED_FIELDS and v is not None}
        if self.get(package_ref) is None:
            raise PackageError(Outcome.NOT_FOUND, f"Package not found: {package_ref}")
        if not updates:
            raise PackageError(Outcome.INVALID, "No valid fields to update")
        if "path" in updates:
            folder = _check_folder(updates["path"])
            updates["path"] = str(folder.resolve())
            updates["size_bytes"] = _folder_size(folder)

        sets = ", ".join(f"{k} = ?" for k in updates)
        db = get_db()
        try:
            with db:
                db.execute(f"UPDATE packages SET {sets} WHERE id = ?", [*updates.values(), package_ref])
        except sqlite3.IntegrityError as exc:
            raise PackageError(Outcome.CONFLICT, f"A package named {updates.get('name')!r} already exists") from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Could not update package {package_ref}: {exc}") from exc
        return self.get(package_ref)

    def delete(self, package_ref: str, conn: sqlite3.Connection | None = None) -> bool:
        """Remove a catalogue entry (the source folder is left alone).

        When ``conn`` is given the delete joins the caller's transaction.
        """
        db = conn or get_db()
        try:
            cur = db.execute("DELETE FROM packages WHERE id = ?", (package_ref,))
            if conn is None:
                db.commit()
        except sqlite3.Error as exc:
            if conn is None:
                db.rollback()
            raise StorageError(f"Could not delete package {package_ref}: {exc}") from exc
        return cur.rowcount > 0

    # ── Materialization ────────────────────────────────────────────

    def materialize(self, package: Package) -> Artifact:
        """Zip the package folder into a fresh artifact file."""
        folder = Path(package.path)
        if not folder.is_dir():
            raise StorageError(f"Package folder missing: {package.path}")
        safe_name = _SAFE_NAME_RE.sub("_", package.name)
        filename = f"package_{safe_name}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.zip"
        out_path = artifacts_dir() / filename

        start = time.monotonic()
        try:
            with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for item in sorted(folder.rglob("*")):
                    zf.write(item, arcname=item.relative_to(folder).as_posix())
        except OSError as exc:
            out_path.unlink(missing_ok=True)
            raise StorageError(f"Could not materialize {package.id}: {exc}") from exc

        size = out_path.stat().st_size
        logger.info(
            "Materialized %s → %s (%.1f KB, %d ms)",
            package.id, filename, size / 1024, int((time.monotonic() - start) * 1000),
        )
        return Artifact(path=out_path, filename=filename, size=size)
