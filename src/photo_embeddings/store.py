"""Durable embedding store keyed by photo id."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import RLock

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from photo_embeddings.db import PhotoEmbedding, open_session
from photo_embeddings.db_helpers import upsert
from photo_embeddings.errors import PersistError
from photo_embeddings.extractor import Vector
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "embedding_store"})

_VECTOR_DTYPE = np.dtype("<f4")
_DELETE_CHUNK_SIZE = 400
_UPSERT_COLUMNS = ("vector", "dim", "content_hash", "model_name", "computed_at", "source_modified_at")


def encode_vector(vector: np.ndarray) -> bytes:
    """Serialize a vector as raw little-endian float32 bytes."""

    return np.ascontiguousarray(vector, dtype=_VECTOR_DTYPE).reshape(-1).tobytes()


def decode_vector(payload: bytes) -> Vector:
    """Inverse of :func:`encode_vector`; returns a native float32 array."""

    return np.frombuffer(payload, dtype=_VECTOR_DTYPE).astype(np.float32)


@dataclass(frozen=True)
class Embedding:
    """Cached feature vector for one photo."""

    photo_id: str
    vector: Vector
    content_hash: str
    computed_at: float
    source_modified_at: float
    model_name: str = ""

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])

    def is_fresh_for(self, modified_at: float) -> bool:
        """Return ``True`` when no recompute is needed for a source modified at ``modified_at``."""

        return self.computed_at >= modified_at


def _to_embedding(row: PhotoEmbedding) -> Embedding:
    return Embedding(
        photo_id=row.photo_id,
        vector=decode_vector(row.vector),
        content_hash=row.content_hash,
        computed_at=float(row.computed_at),
        source_modified_at=float(row.source_modified_at),
        model_name=row.model_name,
    )


class EmbeddingStore:
    """Serialized access wrapper around the ``photo_embedding`` table.

    Every public method takes the store's lock for the duration of a short
    database transaction, so the background scanner and interactive callers
    can share one instance without coordinating threads themselves. Callers
    must not hold the store while extracting features; the store never calls
    back into an extractor.
    """

    def __init__(self, target: str | Path) -> None:
        self._target = target
        self._lock = RLock()

    @contextmanager
    def _session(self, operation: str, photo_id: str | None = None) -> Iterator[Session]:
        with self._lock:
            session: Session | None = None
            try:
                session = open_session(self._target)
                yield session
            except SQLAlchemyError as exc:
                if session is not None:
                    session.rollback()
                LOGGER.error(
                    "embedding_store_error",
                    extra={"operation": operation, "photo_id": photo_id, "error": str(exc)},
                )
                raise PersistError(operation, photo_id, exc) from exc
            finally:
                if session is not None:
                    session.close()

    def get(self, photo_id: str) -> Embedding | None:
        """Return the cached embedding for ``photo_id`` or ``None`` when absent."""

        with self._session("get", photo_id) as session:
            row = session.get(PhotoEmbedding, photo_id)
            return _to_embedding(row) if row is not None else None

    def put(
        self,
        photo_id: str,
        vector: np.ndarray,
        content_hash: str,
        computed_at: float,
        source_modified_at: float,
        model_name: str = "",
    ) -> Embedding:
        """Insert or overwrite the embedding for ``photo_id``."""

        payload = encode_vector(vector)
        values = {
            "photo_id": photo_id,
            "vector": payload,
            "dim": len(payload) // _VECTOR_DTYPE.itemsize,
            "content_hash": content_hash,
            "model_name": model_name,
            "computed_at": float(computed_at),
            "source_modified_at": float(source_modified_at),
        }

        with self._session("put", photo_id) as session:
            upsert(session, PhotoEmbedding, values, PhotoEmbedding.photo_id, _UPSERT_COLUMNS)
            session.commit()

        return Embedding(
            photo_id=photo_id,
            vector=decode_vector(payload),
            content_hash=content_hash,
            computed_at=float(computed_at),
            source_modified_at=float(source_modified_at),
            model_name=model_name,
        )

    def delete(self, photo_id: str) -> bool:
        """Remove ``photo_id``; returns whether a row existed."""

        with self._session("delete", photo_id) as session:
            result = session.execute(delete(PhotoEmbedding).where(PhotoEmbedding.photo_id == photo_id))
            session.commit()
            return bool(result.rowcount)

    def delete_many(self, photo_ids: Iterable[str]) -> int:
        """Remove several ids in bounded chunks and return the number of deleted rows."""

        ids = list(dict.fromkeys(photo_ids))
        if not ids:
            return 0

        removed = 0
        with self._session("delete_many") as session:
            # Keep each IN (...) under the per-statement bound-parameter limit.
            for offset in range(0, len(ids), _DELETE_CHUNK_SIZE):
                chunk = ids[offset : offset + _DELETE_CHUNK_SIZE]
                result = session.execute(delete(PhotoEmbedding).where(PhotoEmbedding.photo_id.in_(chunk)))
                removed += int(result.rowcount or 0)
            session.commit()
        return removed

    def count(self, predicate: Callable[[Embedding], bool] | None = None) -> int:
        """Count stored embeddings, optionally only those matching ``predicate``."""

        if predicate is None:
            with self._session("count") as session:
                return int(session.execute(select(func.count()).select_from(PhotoEmbedding)).scalar_one())

        return sum(1 for embedding in self.all() if predicate(embedding))

    def ids(self) -> list[str]:
        """Return every stored photo id in ascending order."""

        with self._session("ids") as session:
            rows = session.execute(select(PhotoEmbedding.photo_id).order_by(PhotoEmbedding.photo_id))
            return [row.photo_id for row in rows]

    def all(self) -> list[Embedding]:
        """Return a snapshot of every stored embedding ordered by photo id."""

        with self._session("all") as session:
            rows = session.execute(select(PhotoEmbedding).order_by(PhotoEmbedding.photo_id)).scalars()
            return [_to_embedding(row) for row in rows]


__all__ = ["Embedding", "EmbeddingStore", "decode_vector", "encode_vector"]
