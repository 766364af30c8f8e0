"""Compute-or-fetch: the single path through which embeddings are produced."""

from __future__ import annotations

import time
from dataclasses import dataclass

from photo_embeddings.assets import PhotoRef
from photo_embeddings.context import IndexContext
from photo_embeddings.errors import FailureKind, PersistError
from photo_embeddings.hasher import compute_content_hash
from photo_embeddings.store import Embedding
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "compute"})


@dataclass(frozen=True)
class ComputeResult:
    """Outcome of resolving one photo's embedding.

    ``failure`` is ``None`` on success. ``cached`` tells whether the stored
    vector was reused. ``attempts`` is the failure count after this call.
    """

    photo_id: str
    embedding: Embedding | None = None
    cached: bool = False
    failure: FailureKind | None = None
    attempts: int = 0
    error: str | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None and self.embedding is not None

    @property
    def retryable(self) -> bool:
        """Whether offering the user a retry makes sense."""

        return self.failure is not None


def _failed(ctx: IndexContext, photo_id: str, kind: FailureKind, error: str, started: float) -> ComputeResult:
    attempts = ctx.tracker.record_failure(photo_id) if kind.is_transient else ctx.tracker.attempts(photo_id)
    LOGGER.warning(
        "embedding_compute_failed",
        extra={"photo_id": photo_id, "kind": kind.value, "attempts": attempts, "error": error},
    )
    return ComputeResult(
        photo_id=photo_id,
        failure=kind,
        attempts=attempts,
        error=error,
        elapsed=time.perf_counter() - started,
    )


def compute_or_fetch(ctx: IndexContext, photo: PhotoRef, *, skip_permanent: bool = True) -> ComputeResult:
    """Return the cached embedding when fresh, otherwise extract and store a new one.

    A cached entry is fresh when ``computed_at >= photo.modification_time``.
    Decode and extraction failures are counted by the failure tracker; a
    persist failure is reported without touching the retry counter. When
    ``skip_permanent`` is set, permanently failed photos are not attempted.
    """

    started = time.perf_counter()
    photo_id = photo.photo_id

    try:
        cached = ctx.store.get(photo_id)
    except PersistError as exc:
        return _failed(ctx, photo_id, FailureKind.PERSIST, str(exc), started)

    if cached is not None and cached.is_fresh_for(photo.modification_time):
        return ComputeResult(photo_id=photo_id, embedding=cached, cached=True, elapsed=time.perf_counter() - started)

    if skip_permanent and ctx.tracker.is_permanently_failed(photo_id):
        return ComputeResult(
            photo_id=photo_id,
            failure=FailureKind.PERMANENT,
            attempts=ctx.tracker.attempts(photo_id),
            error="photo is permanently failed; reset it to retry",
            elapsed=time.perf_counter() - started,
        )

    if cached is not None:
        LOGGER.info(
            "embedding_stale",
            extra={"photo_id": photo_id, "computed_at": cached.computed_at, "modified_at": photo.modification_time},
        )

    try:
        image = ctx.assets.load_image(photo_id, ctx.max_dimension)
    except Exception as exc:
        return _failed(ctx, photo_id, FailureKind.DECODE, str(exc), started)
    if image is None:
        return _failed(ctx, photo_id, FailureKind.DECODE, "image could not be loaded", started)

    extraction = ctx.extractor.extract(image, ctx.max_dimension)
    if not extraction.ok or extraction.vector is None:
        return _failed(ctx, photo_id, FailureKind.EXTRACTION, extraction.error or "extraction failed", started)

    content_hash = compute_content_hash(image)
    # Clamp so the freshness invariant holds even for mtimes ahead of the local clock.
    computed_at = max(time.time(), photo.modification_time)

    try:
        stored = ctx.store.put(
            photo_id,
            extraction.vector,
            content_hash,
            computed_at=computed_at,
            source_modified_at=photo.modification_time,
            model_name=ctx.extractor.model_name,
        )
    except PersistError as exc:
        return _failed(ctx, photo_id, FailureKind.PERSIST, str(exc), started)

    ctx.tracker.record_success(photo_id)
    elapsed = time.perf_counter() - started
    LOGGER.debug("embedding_computed", extra={"photo_id": photo_id, "dim": stored.dim, "elapsed": elapsed})
    return ComputeResult(photo_id=photo_id, embedding=stored, elapsed=elapsed)


def compute_now(ctx: IndexContext, photo_id: str, *, retry: bool = False) -> ComputeResult | None:
    """Interactive single-photo compute.

    Returns ``None`` when the asset source no longer knows ``photo_id``.
    With ``retry=True`` the photo's failure record, including a permanent
    failure, is explicitly reset before the attempt.
    """

    photo = ctx.assets.get(photo_id)
    if photo is None:
        LOGGER.info("compute_now_missing_photo", extra={"photo_id": photo_id})
        return None

    if retry:
        ctx.tracker.reset(photo_id)

    return compute_or_fetch(ctx, photo)


__all__ = ["ComputeResult", "compute_now", "compute_or_fetch"]
