"""Tests for the incremental, watermark-driven scanner."""

from __future__ import annotations

import threading

import pytest

from photo_embeddings.compute import compute_now
from photo_embeddings.config import Settings
from photo_embeddings.context import open_context
from photo_embeddings.scanner import BackgroundScan, IncrementalScanner, ScanAlreadyRunning, next_watermark


def _add_photos(assets, times):
    for index, created in enumerate(times):
        assets.add(f"img_{index:03d}", creation_time=created)


def test_first_run_processes_newest_first_and_sets_watermark_to_oldest(ctx, assets, extractor) -> None:
    _add_photos(assets, [1_000.0 + offset for offset in range(10)])
    progress: list[tuple[int, int]] = []

    report = IncrementalScanner(ctx).run(progress=lambda done, total: progress.append((done, total)))

    assert report.previous_watermark is None
    assert report.total == 10
    assert report.processed == 10
    assert report.computed == 10
    assert extractor.calls == [f"img_{index:03d}" for index in range(9, -1, -1)]
    assert report.watermark == 1_000.0
    assert ctx.preferences.get_watermark() == 1_000.0
    assert progress[:10] == [(done, 10) for done in range(1, 11)]
    assert progress[-1] == (10, 10)
    assert len(progress) == 11


def test_second_run_only_enumerates_newer_photos(ctx, assets, extractor) -> None:
    _add_photos(assets, [10.0, 20.0, 30.0])
    scanner = IncrementalScanner(ctx)
    scanner.run()
    assert ctx.preferences.get_watermark() == 10.0

    assets.add("late", creation_time=40.0)
    report = scanner.run()

    # Items above the old watermark are revisited as cache hits.
    assert report.total == 3
    assert report.cached == 2
    assert report.computed == 1
    assert report.watermark == 20.0
    assert extractor.calls.count("late") == 1


def test_failed_item_does_not_abort_batch(ctx, assets, extractor) -> None:
    _add_photos(assets, [1.0, 2.0, 3.0, 4.0])
    extractor.failing.add("img_002")

    report = IncrementalScanner(ctx).run()

    assert report.processed == 4
    assert report.computed == 3
    assert report.failed == 1
    assert report.failed_ids == ["img_002"]
    assert ctx.tracker.attempts("img_002") == 1
    assert ctx.store.count() == 3


def test_watermark_advances_past_a_failed_oldest_item_across_processes(tmp_path, assets, extractor) -> None:
    _add_photos(assets, [1_000.0 + offset for offset in range(10)])
    extractor.failing.add("img_000")
    target = tmp_path / "shared.db"

    def _fresh_context():
        return open_context(Settings(), assets=assets, extractor=extractor, database_url=target)

    first = IncrementalScanner(_fresh_context()).run()
    assert first.total == 10
    assert first.failed_ids == ["img_000"]
    assert first.watermark == 1_000.0

    second = IncrementalScanner(_fresh_context()).run()
    assert second.total == 9
    assert second.cached == 9
    assert second.watermark == 1_001.0
    assert extractor.calls.count("img_000") == 1

    # The failed photo stays reachable through an explicit retry.
    extractor.failing.discard("img_000")
    retried = compute_now(_fresh_context(), "img_000", retry=True)
    assert retried is not None and retried.ok


def test_permanent_failures_are_skipped_without_loading(ctx, assets) -> None:
    _add_photos(assets, [1.0, 2.0])
    for _ in range(3):
        ctx.tracker.record_failure("img_001")

    report = IncrementalScanner(ctx).run()

    assert report.skipped_permanent == 1
    assert "img_001" not in assets.loads


def test_cancelled_run_stops_between_items_and_keeps_watermark(ctx, assets) -> None:
    _add_photos(assets, [float(value) for value in range(1, 21)])
    cancel = threading.Event()

    def _progress(done: int, _total: int) -> None:
        if done == 5:
            cancel.set()

    report = IncrementalScanner(ctx).run(progress=_progress, cancel_event=cancel)

    assert report.cancelled is True
    assert report.processed == 5
    assert ctx.store.count() == 5
    assert ctx.preferences.get_watermark() is None


def test_watermark_never_moves_backwards(ctx, assets) -> None:
    ctx.preferences.set_watermark(100.0)
    assets.add("old", creation_time=50.0)
    assets.add("new", creation_time=150.0)

    report = IncrementalScanner(ctx).run()

    assert report.total == 1
    assert report.watermark == 150.0
    assert ctx.preferences.set_watermark(120.0) == 150.0


def test_next_watermark_rules() -> None:
    assert next_watermark([]) is None
    assert next_watermark([3.0, 1.0, 2.0]) == 1.0


def test_concurrent_run_is_rejected(ctx, assets) -> None:
    assets.add("p1", creation_time=1.0)
    scanner = IncrementalScanner(ctx)
    entered = threading.Event()
    release = threading.Event()

    def _blocking_progress(_done: int, _total: int) -> None:
        entered.set()
        release.wait(timeout=5)

    background = BackgroundScan(scanner, progress=_blocking_progress).start()
    assert entered.wait(timeout=5)
    try:
        with pytest.raises(ScanAlreadyRunning):
            scanner.run()
    finally:
        release.set()
        report = background.join(timeout=5)

    assert background.error is None
    assert report is not None and report.processed == 1
    assert not background.running
