"""Failure kinds and exceptions shared by the indexing components."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Why a single photo could not be embedded."""

    DECODE = "decode"
    EXTRACTION = "extraction"
    PERSIST = "persist"
    PERMANENT = "permanent"

    @property
    def is_transient(self) -> bool:
        """Decode and extraction failures count against the retry cap."""

        return self in (FailureKind.DECODE, FailureKind.EXTRACTION)


class PersistError(RuntimeError):
    """A durable write or read against the embedding database failed."""

    def __init__(self, operation: str, photo_id: str | None, cause: Exception) -> None:
        self.operation = operation
        self.photo_id = photo_id
        self.cause = cause
        target = f" for {photo_id!r}" if photo_id is not None else ""
        super().__init__(f"{operation} failed{target}: {cause}")


__all__ = ["FailureKind", "PersistError"]
