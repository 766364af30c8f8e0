"""Incremental, watermark-driven embedding scan over the asset library."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from photo_embeddings.compute import ComputeResult, compute_or_fetch
from photo_embeddings.context import IndexContext
from photo_embeddings.errors import FailureKind
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "scanner"})

ProgressCallback = Callable[[int, int], None]


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    WATERMARK_ADVANCE = "watermark_advance"


class ScanAlreadyRunning(RuntimeError):
    """Raised when a second batch scan is started on the same scanner."""


@dataclass
class ScanReport:
    """Summary of one scanner run."""

    total: int = 0
    processed: int = 0
    cached: int = 0
    computed: int = 0
    failed: int = 0
    skipped_permanent: int = 0
    persist_failures: int = 0
    cancelled: bool = False
    previous_watermark: float | None = None
    watermark: float | None = None
    elapsed: float = 0.0
    compute_seconds: float = 0.0
    failed_ids: list[str] = field(default_factory=list)

    @property
    def average_compute_seconds(self) -> float:
        return self.compute_seconds / self.computed if self.computed else 0.0


def next_watermark(processed_times: list[float]) -> float | None:
    """Return the creation time the watermark advances to after a completed run.

    This is the oldest item the run processed, whatever its outcome. A photo
    that failed below the retry cap is left behind the watermark; it stays
    reachable through ``compute_now(..., retry=True)`` or a ``--reset`` scan.
    """

    if not processed_times:
        return None
    return min(processed_times)


class IncrementalScanner:
    """Drives compute-or-fetch across photos newer than the persisted watermark.

    At most one run is active per scanner; interactive callers keep using the
    same :class:`IndexContext` concurrently. Cancellation is cooperative and
    only observed between items.
    """

    def __init__(self, ctx: IndexContext) -> None:
        self._ctx = ctx
        self._run_lock = threading.Lock()
        self.state = ScanState.IDLE

    def run(
        self,
        progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ScanReport:
        """Scan once and return a :class:`ScanReport`.

        Raises:
            ScanAlreadyRunning: another run on this scanner is in progress.
        """

        if not self._run_lock.acquire(blocking=False):
            raise ScanAlreadyRunning("an embedding scan is already running")
        try:
            return self._run(progress, cancel_event)
        finally:
            self.state = ScanState.IDLE
            self._run_lock.release()

    def _run(self, progress: ProgressCallback | None, cancel_event: threading.Event | None) -> ScanReport:
        ctx = self._ctx
        started = time.perf_counter()
        self.state = ScanState.SCANNING

        watermark = ctx.preferences.get_watermark()
        photos = ctx.assets.enumerate(created_after=watermark, newest_first=True)
        report = ScanReport(total=len(photos), previous_watermark=watermark, watermark=watermark)
        LOGGER.info("scan_start", extra={"watermark": watermark, "total": report.total})

        yield_every = max(1, ctx.settings.scan.yield_every)
        processed_times: list[float] = []

        for photo in photos:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break

            result = compute_or_fetch(ctx, photo)
            report.processed += 1

            processed_times.append(photo.creation_time)
            self._record_outcome(report, result)

            if progress is not None:
                progress(report.processed, report.total)

            if report.processed % yield_every == 0:
                # Let interactive threads (similarity queries) acquire the GIL and store lock.
                time.sleep(0)

        if progress is not None:
            progress(report.processed, report.total)

        if report.cancelled:
            LOGGER.info("scan_cancelled", extra={"processed": report.processed, "total": report.total})
        else:
            self.state = ScanState.WATERMARK_ADVANCE
            candidate = next_watermark(processed_times)
            if candidate is not None:
                report.watermark = ctx.preferences.set_watermark(candidate)

        report.elapsed = time.perf_counter() - started
        LOGGER.info(
            "scan_complete",
            extra={
                "total": report.total,
                "processed": report.processed,
                "cached": report.cached,
                "computed": report.computed,
                "failed": report.failed,
                "skipped_permanent": report.skipped_permanent,
                "persist_failures": report.persist_failures,
                "permanent_failures": ctx.tracker.permanent_failure_count(),
                "cancelled": report.cancelled,
                "watermark": report.watermark,
                "elapsed": round(report.elapsed, 3),
                "avg_compute_seconds": round(report.average_compute_seconds, 3),
            },
        )
        return report

    def _record_outcome(self, report: ScanReport, result: ComputeResult) -> None:
        if result.ok:
            if result.cached:
                report.cached += 1
            else:
                report.computed += 1
                report.compute_seconds += result.elapsed
            return

        if result.failure is FailureKind.PERMANENT:
            report.skipped_permanent += 1
            return

        report.failed_ids.append(result.photo_id)
        if result.failure is FailureKind.PERSIST:
            report.persist_failures += 1
        else:
            report.failed += 1


class BackgroundScan:
    """Runs :meth:`IncrementalScanner.run` on a daemon thread."""

    def __init__(self, scanner: IncrementalScanner, progress: ProgressCallback | None = None) -> None:
        self._scanner = scanner
        self._progress = progress
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self.report: ScanReport | None = None
        self.error: BaseException | None = None

    def _target(self) -> None:
        try:
            self.report = self._scanner.run(progress=self._progress, cancel_event=self._cancel)
        except Exception as exc:
            self.error = exc
            LOGGER.error("background_scan_error", extra={"error": str(exc)}, exc_info=True)

    def start(self) -> "BackgroundScan":
        if self._thread is not None:
            raise ScanAlreadyRunning("background scan already started")
        self._thread = threading.Thread(target=self._target, name="embedding-scan", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Request cancellation; the in-flight item still completes."""

        self._cancel.set()

    def join(self, timeout: float | None = None) -> ScanReport | None:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.report

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = [
    "BackgroundScan",
    "IncrementalScanner",
    "ProgressCallback",
    "ScanAlreadyRunning",
    "ScanReport",
    "ScanState",
    "next_watermark",
]
