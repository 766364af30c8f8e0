"""Tests for per-photo retry bookkeeping."""

from __future__ import annotations

import threading

import pytest

from photo_embeddings.failures import FailureTracker


def test_photo_becomes_permanent_after_max_retries() -> None:
    tracker = FailureTracker(max_retries=3)

    assert tracker.record_failure("a") == 1
    assert tracker.record_failure("a") == 2
    assert tracker.is_permanently_failed("a") is False

    assert tracker.record_failure("a") == 3
    assert tracker.is_permanently_failed("a") is True
    assert tracker.permanent_failures() == ["a"]


def test_success_resets_attempts_to_zero() -> None:
    tracker = FailureTracker(max_retries=3)
    tracker.record_failure("a")
    tracker.record_failure("a")

    tracker.record_success("a")

    assert tracker.attempts("a") == 0
    assert tracker.record_failure("a") == 1
    assert tracker.is_permanently_failed("a") is False


def test_reset_and_clear_all_lift_permanent_failures() -> None:
    tracker = FailureTracker(max_retries=1)
    tracker.record_failure("a")
    tracker.record_failure("b")
    assert tracker.permanent_failure_count() == 2

    assert tracker.reset("a") is True
    assert tracker.reset("a") is False
    assert tracker.is_permanently_failed("a") is False

    tracker.clear_all()
    assert tracker.permanent_failure_count() == 0
    assert tracker.attempts("b") == 0


def test_rejects_non_positive_retry_cap() -> None:
    with pytest.raises(ValueError):
        FailureTracker(max_retries=0)


def test_concurrent_failures_are_all_counted() -> None:
    """Every increment from competing threads lands exactly once."""

    tracker = FailureTracker(max_retries=10_000)

    def _hammer() -> None:
        for _ in range(200):
            tracker.record_failure("shared")

    threads = [threading.Thread(target=_hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tracker.attempts("shared") == 1600
    assert tracker.is_permanently_failed("shared") is False
