"""SQLAlchemy schema definitions, engine cache and session management."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import Float, Index, Integer, LargeBinary, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from photo_embeddings.db_helpers import is_sqlite_memory, normalize_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class PhotoEmbedding(Base):
    """One cached feature vector per photo.

    ``vector`` holds raw little-endian float32 bytes; only
    :class:`photo_embeddings.store.EmbeddingStore` encodes and decodes it.
    """

    __tablename__ = "photo_embedding"

    photo_id: Mapped[str] = mapped_column(String, primary_key=True)
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    dim: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    computed_at: Mapped[float] = mapped_column(Float, nullable=False)
    source_modified_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_photo_embedding_model_name", "model_name"),)


class PhotoPreference(Base):
    """Per-photo scalar preferences; ``stack_id`` is 0 for unstacked photos."""

    __tablename__ = "photo_preference"

    photo_id: Mapped[str] = mapped_column(String, primary_key=True)
    stack_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_photo_preference_stack_id", "stack_id"),)


class AppState(Base):
    """Global key/value scalars such as the scan watermark."""

    __tablename__ = "app_state"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    """Ensure the parent directory for a database file exists."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the provided target, creating schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")
        in_memory = is_sqlite_memory(normalized)

        engine_kwargs: dict[str, Any] = {}
        if in_memory:
            # One shared connection so every session sees the same database.
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            engine_kwargs["poolclass"] = StaticPool
        elif is_sqlite:
            _ensure_parent_directory(Path(sa_url.database or ""))
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite and not in_memory:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """Configure SQLite for a concurrent background scanner and interactive reader."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Two processes opening a fresh database can race on CREATE TABLE.
            if "already exists" in str(exc).lower():
                LOGGER.info("db_create_all_table_exists_race", extra={"target": normalized, "error": str(exc)})
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session against the embedding database."""

    return Session(get_engine(target), expire_on_commit=False)


def dispose_engine(target: str | Path) -> None:
    """Dispose and forget the cached engine for ``target``."""

    normalized = normalize_database_url(target)
    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.pop(normalized, None)
    if engine is not None:
        engine.dispose()


__all__ = [
    "AppState",
    "Base",
    "PhotoEmbedding",
    "PhotoPreference",
    "dispose_engine",
    "get_engine",
    "open_session",
]
