"""Outcome codes and exceptions shared by the registry and delivery code.

Expected outcomes (unknown key, key bound elsewhere, expired link, device
offline) travel back to callers inside result objects tagged with an
:class:`Outcome`.  Exceptions are reserved for storage failures and for
operator input the catalogue refuses.
"""

from __future__ import annotations

from enum import Enum


class Outcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    NO_ONLINE_TARGET = "no_online_target"
    INVALID = "invalid"


# HTTP status used by the API layer for each non-OK outcome.
HTTP_STATUS = {
    Outcome.NOT_FOUND: 404,
    Outcome.CONFLICT: 409,
    Outcome.EXPIRED: 410,
    Outcome.NO_ONLINE_TARGET: 404,
    Outcome.INVALID: 400,
}


class StorageError(Exception):
    """Raised when the backing store fails to read or write.

    The operation that hit it is abandoned; any open transaction is rolled
    back so in-memory and on-disk state stay consistent.
    """


class PackageError(Exception):
    """Raised when the package catalogue rejects an operator request."""

    def __init__(self, outcome: Outcome, detail: str) -> None:
        super().__init__(detail)
        self.outcome = outcome
        self.detail = detail
