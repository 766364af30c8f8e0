"""Tests for coverage statistics, orphan cleanup and resets."""

from __future__ import annotations

from photo_embeddings.compute import compute_or_fetch
from photo_embeddings.maintenance import (
    EmbeddingStats,
    cleanup_orphans,
    embedding_stats,
    reset_failures,
    reset_watermark,
)


def test_stats_report_coverage_of_existing_photos(ctx, assets) -> None:
    for index in range(4):
        photo = assets.add(f"p{index}", creation_time=float(index))
        if index < 3:
            compute_or_fetch(ctx, photo)
    assets.remove("p0")

    stats = embedding_stats(ctx)

    assert stats.total_photos == 3
    assert stats.photos_with_embeddings == 2
    assert stats.coverage_percentage == 66


def test_stats_on_empty_library() -> None:
    assert EmbeddingStats(total_photos=0, photos_with_embeddings=0).coverage == 0.0


def test_cleanup_deletes_only_orphans(ctx, assets) -> None:
    for photo_id in ("keep", "gone_1", "gone_2"):
        compute_or_fetch(ctx, assets.add(photo_id, creation_time=1.0))
    assets.remove("gone_1")
    assets.remove("gone_2")

    assert cleanup_orphans(ctx) == 2
    assert ctx.store.ids() == ["keep"]
    assert cleanup_orphans(ctx) == 0


def test_resets(ctx) -> None:
    ctx.preferences.set_watermark(42.0)
    for _ in range(3):
        ctx.tracker.record_failure("bad")

    reset_watermark(ctx)
    assert ctx.preferences.get_watermark() is None
    assert reset_failures(ctx) == 1
    assert not ctx.tracker.is_permanently_failed("bad")
