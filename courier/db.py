"""Database initialisation for Courier.

Creates (or migrates) the SQLite database holding licenses, the package
catalogue, download grants and operator accounts.  The database path is
taken from the ``COURIER_DATA_DIR`` environment variable (default:
``./data``).

Usage::

    from courier.db import get_db, init_db
    init_db()                  # idempotent, safe to call multiple times
    conn = get_db()            # returns a per-thread connection
"""

from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path

from courier.errors import StorageError

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def data_dir() -> Path:
    """Directory holding the database and materialized artifacts."""
    if _DB_PATH is not None:
        return _DB_PATH.parent
    path = Path(os.environ.get("COURIER_DATA_DIR", "./data"))
    path.mkdir(parents=True, exist_ok=True)
    return path


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        _DB_PATH = data_dir() / "courier.db"
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL
    _DB_PATH = Path(path)
    _LOCAL = threading.local()


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode, FK enabled)."""
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        try:
            conn = sqlite3.connect(str(_db_path()), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {_db_path()}: {exc}") from exc
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create all tables (idempotent, safe to run multiple times)."""
    if path:
        set_db_path(path)
    conn = get_db()
    _create_schema(conn)
    conn.commit()


_SCHEMA_SQL = """
-- ───────── Licenses ─────────

CREATE TABLE IF NOT EXISTS licenses (
    key                  TEXT PRIMARY KEY,
    activated            BOOLEAN NOT NULL DEFAULT FALSE,
    bound_device_id      TEXT,
    activated_at         TIMESTAMP,
    activated_by_name    TEXT,
    activated_by_model   TEXT,
    assigned_package_ref TEXT,
    created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_licenses_device  ON licenses(bound_device_id);
CREATE INDEX IF NOT EXISTS idx_licenses_package ON licenses(assigned_package_ref);

CREATE TABLE IF NOT EXISTS activation_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    license_key  TEXT NOT NULL,
    device_id    TEXT NOT NULL,
    display_name TEXT,
    model        TEXT,
    created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_activation_key ON activation_log(license_key);

-- ───────── Packages & Grants ─────────

CREATE TABLE IF NOT EXISTS packages (
    id         TEXT PRIMARY KEY,
    name       TEXT NOT NULL,
    kind       TEXT NOT NULL,
    variant    TEXT NOT NULL,
    version    TEXT NOT NULL,
    path       TEXT NOT NULL,
    size_bytes INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_packages_name ON packages(name COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS download_grants (
    token               TEXT PRIMARY KEY,
    package_ref         TEXT NOT NULL,
    file_path           TEXT NOT NULL,
    file_size           INTEGER NOT NULL,
    target_device_id    TEXT,
    target_transport_id TEXT,
    issued_at           REAL NOT NULL,
    expires_at          REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_grants_expiry  ON download_grants(expires_at);
CREATE INDEX IF NOT EXISTS idx_grants_package ON download_grants(package_ref);

-- ───────── Operators ─────────

CREATE TABLE IF NOT EXISTS admin_users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    username      TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    is_active     BOOLEAN DEFAULT TRUE,
    last_login    TIMESTAMP,
    created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def _create_schema(conn: sqlite3.Connection) -> None:
    """Execute all CREATE TABLE / INDEX statements in one transaction."""
    try:
        conn.executescript(_SCHEMA_SQL)
    except sqlite3.Error as exc:
        raise StorageError(f"Schema creation failed: {exc}") from exc
