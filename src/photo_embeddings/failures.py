"""Per-photo retry bookkeeping shared by the scanner and interactive callers."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "failure_tracker"})

DEFAULT_MAX_RETRIES = 3


@dataclass
class FailureRecord:
    """Attempt counter for one photo and whether it hit the retry cap."""

    attempts: int = 0
    permanently_failed: bool = False


class FailureTracker:
    """Thread-safe map of ``photo_id -> FailureRecord``.

    One lock guards the map and every critical section is a constant-time
    dict operation; logging and all extraction work happen outside it.
    Permanent failures are only lifted by :meth:`reset` or :meth:`clear_all`.
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self._records: dict[str, FailureRecord] = {}
        self._lock = Lock()

    def record_failure(self, photo_id: str) -> int:
        """Count one failed attempt and return the new attempt total."""

        with self._lock:
            record = self._records.setdefault(photo_id, FailureRecord())
            record.attempts += 1
            promoted = not record.permanently_failed and record.attempts >= self.max_retries
            if promoted:
                record.permanently_failed = True
            attempts = record.attempts

        if promoted:
            LOGGER.warning("photo_permanently_failed", extra={"photo_id": photo_id, "attempts": attempts})
        else:
            LOGGER.info(
                "photo_attempt_failed",
                extra={"photo_id": photo_id, "attempts": attempts, "max_retries": self.max_retries},
            )
        return attempts

    def record_success(self, photo_id: str) -> None:
        """Forget any attempts recorded for ``photo_id``."""

        with self._lock:
            self._records.pop(photo_id, None)

    def is_permanently_failed(self, photo_id: str) -> bool:
        with self._lock:
            record = self._records.get(photo_id)
            return record is not None and record.permanently_failed

    def attempts(self, photo_id: str) -> int:
        with self._lock:
            record = self._records.get(photo_id)
            return record.attempts if record is not None else 0

    def reset(self, photo_id: str) -> bool:
        """Explicitly clear one id, including a permanent failure. Returns whether it was tracked."""

        with self._lock:
            removed = self._records.pop(photo_id, None)
        if removed is not None and removed.permanently_failed:
            LOGGER.info("photo_failure_reset", extra={"photo_id": photo_id})
        return removed is not None

    def clear_all(self) -> None:
        """Operator reset: every previously failed photo becomes eligible again."""

        with self._lock:
            cleared = len(self._records)
            self._records.clear()
        LOGGER.info("failure_tracking_cleared", extra={"cleared": cleared})

    def permanent_failures(self) -> list[str]:
        with self._lock:
            return sorted(photo_id for photo_id, record in self._records.items() if record.permanently_failed)

    def permanent_failure_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if record.permanently_failed)


__all__ = ["DEFAULT_MAX_RETRIES", "FailureRecord", "FailureTracker"]
