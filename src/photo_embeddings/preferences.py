"""Preference/metadata store: per-photo stack ids and global scalars."""

from __future__ import annotations

import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import RLock

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from photo_embeddings.db import AppState, PhotoPreference, open_session
from photo_embeddings.db_helpers import upsert
from photo_embeddings.errors import PersistError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "preferences"})

WATERMARK_KEY = "embedding_scan_watermark"
STACK_ID_HIGH_WATER_KEY = "stack_id_high_water"


class PreferenceStore:
    """SQLAlchemy-backed scalars consumed by the scanner and stack builder."""

    def __init__(self, target: str | Path) -> None:
        self._target = target
        self._lock = RLock()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        with self._lock:
            session: Session | None = None
            try:
                session = open_session(self._target)
                yield session
            except SQLAlchemyError as exc:
                if session is not None:
                    session.rollback()
                LOGGER.error("preference_store_error", extra={"operation": operation, "error": str(exc)})
                raise PersistError(operation, None, exc) from exc
            finally:
                if session is not None:
                    session.close()

    # --- global scalars ---------------------------------------------------------

    def get_scalar(self, key: str) -> str | None:
        with self._session("get_scalar") as session:
            row = session.get(AppState, key)
            return row.value if row is not None else None

    def set_scalar(self, key: str, value: str) -> None:
        with self._session("set_scalar") as session:
            row = {"key": key, "value": value, "updated_at": time.time()}
            upsert(session, AppState, row, AppState.key, ("value", "updated_at"))
            session.commit()

    def delete_scalar(self, key: str) -> None:
        with self._session("delete_scalar") as session:
            session.execute(delete(AppState).where(AppState.key == key))
            session.commit()

    def get_watermark(self) -> float | None:
        """Return the scan watermark, or ``None`` when no run has completed yet."""

        raw = self.get_scalar(WATERMARK_KEY)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            LOGGER.error("watermark_parse_error", extra={"value": raw})
            return None

    def set_watermark(self, value: float) -> float:
        """Advance the watermark to ``value``; never moves it backwards.

        Returns the watermark in effect after the call.
        """

        with self._lock:
            current = self.get_watermark()
            if current is not None and value <= current:
                LOGGER.debug("watermark_not_advanced", extra={"current": current, "requested": value})
                return current
            self.set_scalar(WATERMARK_KEY, repr(float(value)))
        LOGGER.info("watermark_advanced", extra={"previous": current, "watermark": value})
        return float(value)

    def reset_watermark(self) -> None:
        """Forget the watermark so the next scan enumerates the whole library."""

        self.delete_scalar(WATERMARK_KEY)
        LOGGER.info("watermark_reset", extra={})

    # --- stack assignments ------------------------------------------------------

    def get_stack_id(self, photo_id: str) -> int | None:
        """Return the positive stack id for ``photo_id`` or ``None`` for singletons."""

        with self._session("get_stack_id") as session:
            row = session.get(PhotoPreference, photo_id)
            if row is None or row.stack_id <= 0:
                return None
            return int(row.stack_id)

    def set_stack_ids(self, photo_ids: Iterable[str], stack_id: int) -> None:
        """Write ``stack_id`` to every photo in ``photo_ids`` in one transaction."""

        now = time.time()
        rows = [{"photo_id": photo_id, "stack_id": int(stack_id), "updated_at": now} for photo_id in photo_ids]
        if not rows:
            return

        with self._session("set_stack_ids") as session:
            upsert(session, PhotoPreference, rows, PhotoPreference.photo_id, ("stack_id", "updated_at"))
            session.commit()

    def set_stack_id(self, photo_id: str, stack_id: int) -> None:
        self.set_stack_ids([photo_id], stack_id)

    def clear_all_stack_ids(self) -> int:
        """Reset every positive stack id to 0 and return how many rows changed."""

        with self._session("clear_all_stack_ids") as session:
            result = session.execute(
                update(PhotoPreference)
                .where(PhotoPreference.stack_id > 0)
                .values(stack_id=0, updated_at=time.time())
            )
            session.commit()
            cleared = int(result.rowcount or 0)
        LOGGER.info("stack_ids_cleared", extra={"cleared": cleared})
        return cleared

    def max_stack_id(self) -> int:
        """Return the largest stack id currently persisted, or 0."""

        with self._session("max_stack_id") as session:
            value = session.execute(select(func.max(PhotoPreference.stack_id))).scalar_one_or_none()
            return int(value or 0)

    def stack_members(self, stack_id: int) -> list[str]:
        with self._session("stack_members") as session:
            rows = session.execute(
                select(PhotoPreference.photo_id)
                .where(PhotoPreference.stack_id == int(stack_id))
                .order_by(PhotoPreference.photo_id)
            )
            return [row.photo_id for row in rows]


class StackIdAllocator:
    """Hands out stack ids that are never reused.

    The floor is the larger of the highest id currently assigned and the
    persisted high-water mark, so ids stay unique after
    :meth:`PreferenceStore.clear_all_stack_ids` and across restarts.
    """

    def __init__(self, preferences: PreferenceStore) -> None:
        self._preferences = preferences
        self._lock = RLock()
        self._last: int | None = None

    def _persisted_floor(self) -> int:
        raw = self._preferences.get_scalar(STACK_ID_HIGH_WATER_KEY)
        try:
            high_water = int(raw) if raw is not None else 0
        except ValueError:
            LOGGER.error("stack_id_high_water_parse_error", extra={"value": raw})
            high_water = 0
        return max(high_water, self._preferences.max_stack_id())

    def floor(self) -> int:
        """Return the largest id handed out or persisted so far."""

        with self._lock:
            if self._last is None:
                self._last = self._persisted_floor()
            return self._last

    def allocate(self) -> int:
        """Return a fresh id strictly greater than every earlier one."""

        with self._lock:
            next_id = self.floor() + 1
            self._preferences.set_scalar(STACK_ID_HIGH_WATER_KEY, str(next_id))
            self._last = next_id
            return next_id


__all__ = ["PreferenceStore", "STACK_ID_HIGH_WATER_KEY", "StackIdAllocator", "WATERMARK_KEY"]
