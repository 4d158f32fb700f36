"""Operator accounts and bearer-token auth for Courier.

Operators sign in with a username and a bcrypt-hashed password and receive
an HS256 JWT scoped to the ``operator`` role.  There is no built-in
password: the first account is seeded from ``COURIER_ADMIN_USER`` /
``COURIER_ADMIN_PASSWORD`` when the table is empty and a password is set,
or created with ``python -m courier.cli operators add <name>``.  Passwords
are changed through ``POST /admin/auth/change-password`` or
``python -m courier.cli operators passwd <name>``.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from datetime import datetime, timezone

import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from courier.errors import StorageError

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("COURIER_JWT_SECRET", "courier-change-me-before-exposing-the-hub")
JWT_ALGORITHM = "HS256"
JWT_ISSUER = "courier"
JWT_EXPIRY_SECONDS = int(os.environ.get("COURIER_JWT_EXPIRY", "43200"))  # 12h

OPERATOR_ROLE = "operator"
MIN_PASSWORD_LENGTH = 10
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72

_bearer = HTTPBearer(auto_error=False)


class WeakPasswordError(ValueError):
    """Raised when a new operator password does not meet the length rules."""


def check_password_strength(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPasswordError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise WeakPasswordError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


# ── Tokens ────────────────────────────────────────────────────────

def create_token(operator_id: int, username: str) -> str:
    now = int(time.time())
    claims = {
        "sub": str(operator_id),
        "username": username,
        "role": OPERATOR_ROLE,
        "iss": JWT_ISSUER,
        "iat": now,
        "exp": now + JWT_EXPIRY_SECONDS,
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"require": ["exp", "sub", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if claims.get("role") != OPERATOR_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator role required")
    return claims


async def require_operator(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> dict:
    """Dependency returning the claims of a valid operator token."""
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return decode_token(creds.credentials)


# ── Operator accounts ─────────────────────────────────────────────

def create_operator(conn: sqlite3.Connection, username: str, password: str) -> int:
    """Add an operator account and return its id.

    Raises :class:`WeakPasswordError` for a password that is too short or
    too long and ``ValueError`` when the username is taken.
    """
    username = username.strip()
    if not username:
        raise ValueError("Username is required")
    check_password_strength(password)
    try:
        with conn:
            cur = conn.execute(
                "INSERT INTO admin_users (username, password_hash) VALUES (?, ?)",
                (username, hash_password(password)),
            )
    except sqlite3.IntegrityError as exc:
        raise ValueError(f"Operator {username!r} already exists") from exc
    except sqlite3.Error as exc:
        raise StorageError(f"Could not create operator {username}: {exc}") from exc
    logger.info("Created operator %s", username)
    return cur.lastrowid


def seed_admin(conn: sqlite3.Connection) -> bool:
    """Create the first operator from the environment if none exists yet.

    Returns ``True`` when an account was created.  With no
    ``COURIER_ADMIN_PASSWORD`` set nothing is seeded and the operator API
    stays locked until an account is added from the CLI.
    """
    count = conn.execute("SELECT COUNT(*) FROM admin_users").fetchone()[0]
    if count:
        return False
    password = os.environ.get("COURIER_ADMIN_PASSWORD")
    if not password:
        logger.warning(
            "No operator account exists and COURIER_ADMIN_PASSWORD is unset; "
            "create one with 'python -m courier.cli operators add <name>'"
        )
        return False
    create_operator(conn, os.environ.get("COURIER_ADMIN_USER", "admin"), password)
    return True


def authenticate(conn: sqlite3.Connection, username: str, password: str) -> dict | None:
    """Check credentials and return ``{"id", "username"}``, or *None*."""
    row = conn.execute(
        "SELECT id, username, password_hash, is_active FROM admin_users WHERE username = ?",
        (username,),
    ).fetchone()
    if row is None or not row["is_active"] or not verify_password(password, row["password_hash"]):
        logger.info("Rejected login for %s", username)
        return None
    with conn:
        conn.execute(
            "UPDATE admin_users SET last_login = ? WHERE id = ?",
            (datetime.now(timezone.utc).isoformat(), row["id"]),
        )
    return {"id": row["id"], "username": row["username"]}


def change_password(conn: sqlite3.Connection, operator_id: int | str, current: str, new: str) -> bool:
    """Replace an operator's password after checking the current one.

    Returns ``False`` when the account is unknown or ``current`` is wrong.
    """
    row = conn.execute(
        "SELECT password_hash FROM admin_users WHERE id = ?", (operator_id,)
    ).fetchone()
    if row is None or not verify_password(current, row["password_hash"]):
        return False
    return set_password(conn, operator_id, new)


def set_password(conn: sqlite3.Connection, operator_id: int | str, new: str) -> bool:
    """Overwrite a password without the current one (CLI recovery path)."""
    check_password_strength(new)
    try:
        with conn:
            cur = conn.execute(
                "UPDATE admin_users SET password_hash = ? WHERE id = ?",
                (hash_password(new), operator_id),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"Could not update operator {operator_id}: {exc}") from exc
    if cur.rowcount:
        logger.info("Password changed for operator %s", operator_id)
    return cur.rowcount > 0


def find_operator_id(conn: sqlite3.Connection, username: str) -> int | None:
    row = conn.execute("SELECT id FROM admin_users WHERE username = ?", (username,)).fetchone()
    return row["id"] if row else None
