"""Operator maintenance: coverage stats, orphan cleanup and resets."""

from __future__ import annotations

from dataclasses import dataclass

from photo_embeddings.context import IndexContext
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "maintenance"})


@dataclass(frozen=True)
class EmbeddingStats:
    total_photos: int
    photos_with_embeddings: int
    permanent_failures: int = 0
    watermark: float | None = None

    @property
    def coverage(self) -> float:
        if self.total_photos <= 0:
            return 0.0
        return min(1.0, self.photos_with_embeddings / self.total_photos)

    @property
    def coverage_percentage(self) -> int:
        return int(self.coverage * 100)


def embedding_stats(ctx: IndexContext) -> EmbeddingStats:
    """Count library photos that have a stored embedding.

    Only embeddings whose photo is still in the asset source count towards
    coverage; orphans are reported by :func:`cleanup_orphans`.
    """

    photos = ctx.assets.enumerate(newest_first=False)
    stored = set(ctx.store.ids())
    covered = sum(1 for photo in photos if photo.photo_id in stored)
    stats = EmbeddingStats(
        total_photos=len(photos),
        photos_with_embeddings=covered,
        permanent_failures=ctx.tracker.permanent_failure_count(),
        watermark=ctx.preferences.get_watermark(),
    )
    LOGGER.info(
        "embedding_stats",
        extra={
            "total_photos": stats.total_photos,
            "photos_with_embeddings": stats.photos_with_embeddings,
            "coverage_percentage": stats.coverage_percentage,
        },
    )
    return stats


def cleanup_orphans(ctx: IndexContext) -> int:
    """Delete embeddings whose photo the asset source confirms is gone."""

    orphans = [photo_id for photo_id in ctx.store.ids() if not ctx.assets.exists(photo_id)]
    if not orphans:
        LOGGER.info("orphan_cleanup_noop", extra={})
        return 0

    removed = ctx.store.delete_many(orphans)
    for photo_id in orphans:
        ctx.tracker.reset(photo_id)
    LOGGER.info("orphan_cleanup_complete", extra={"orphans": len(orphans), "removed": removed})
    return removed


def reset_watermark(ctx: IndexContext) -> None:
    """Force the next scan to enumerate the whole library again."""

    ctx.preferences.reset_watermark()


def reset_failures(ctx: IndexContext) -> int:
    """Clear every failure record, including permanent ones; returns how many were permanent."""

    permanent = ctx.tracker.permanent_failure_count()
    ctx.tracker.clear_all()
    LOGGER.info("failures_reset", extra={"permanent_failures": permanent})
    return permanent


__all__ = ["EmbeddingStats", "cleanup_orphans", "embedding_stats", "reset_failures", "reset_watermark"]
