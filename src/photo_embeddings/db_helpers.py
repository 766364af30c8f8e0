"""Database URL normalisation and dialect-aware upserts."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session

_SQLITE_MEMORY = {"", ":memory:"}


def _absolute(path: str | Path) -> Path:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    return candidate.resolve()


def normalize_database_url(target: str | Path) -> str:
    """Return a canonical URL for an engine-cache key.

    Bare paths (``str`` or :class:`~pathlib.Path`) become absolute SQLite
    URLs, relative SQLite URLs are anchored at the working directory, and
    in-memory SQLite or non-SQLite URLs pass through unchanged.
    """

    if isinstance(target, Path):
        return f"sqlite:///{_absolute(target)}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")
    if "://" not in raw:
        return f"sqlite:///{_absolute(raw)}"

    url = make_url(raw)
    if not url.drivername.startswith("sqlite"):
        return raw
    if (url.database or "") in _SQLITE_MEMORY:
        return url.render_as_string(hide_password=False)
    return url.set(database=str(_absolute(url.database or ""))).render_as_string(hide_password=False)


def is_sqlite_memory(url: str) -> bool:
    """Whether a normalized URL points at an in-memory SQLite database."""

    parsed = make_url(url)
    return parsed.drivername.startswith("sqlite") and (parsed.database or "") in _SQLITE_MEMORY


def dialect_insert(session: Session, table: Any) -> Any:
    """Return a dialect-aware INSERT statement supporting ON CONFLICT."""

    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine.")

    name = bind.dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    if name.startswith("postgresql"):
        return pg_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


def upsert(
    session: Session,
    table: Any,
    rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    key: Any,
    update_columns: Sequence[str],
) -> None:
    """Insert ``rows`` and overwrite ``update_columns`` when ``key`` already exists.

    The caller owns the transaction; nothing is committed here.
    """

    stmt = dialect_insert(session, table).values(rows if isinstance(rows, Sequence) else [rows])
    stmt = stmt.on_conflict_do_update(
        index_elements=[key],
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    session.execute(stmt)


__all__ = ["dialect_insert", "is_sqlite_memory", "normalize_database_url", "upsert"]
