"""Continuous controller: runs batches back to back with failure backoff."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from place_ingest.storage.common import utc_now

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class BatchOutcome(Protocol):
    @property
    def succeeded(self) -> bool: ...

    @property
    def error(self) -> str | None: ...


class BatchRunner(Protocol):
    """One unit of controller work."""

    def run(self) -> BatchOutcome: ...


@dataclass(slots=True)
class ServiceStatus:
    running: bool
    total_batches: int
    successful_batches: int
    failed_batches: int
    success_rate: float
    started_at: datetime | None
    uptime_ms: int
    current_backoff_ms: int
    consecutive_failures: int = 0
    last_error: str | None = None


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Exponential backoff between batches: base after success, capped growth after failure."""

    base_ms: int = 1_000
    multiplier: float = 2.0
    cap_ms: int = 300_000

    def after_success(self) -> int:
        return self.base_ms

    def after_failure(self, current_ms: int) -> int:
        return min(int(current_ms * self.multiplier), self.cap_ms)


class ContinuousController:
    """Two-state supervisor driving a `BatchRunner` on a dedicated thread."""

    def __init__(
        self,
        batch: BatchRunner,
        *,
        backoff: BackoffPolicy | None = None,
        stats_every_batches: int = 5,
    ) -> None:
        self.batch = batch
        self.backoff = backoff or BackoffPolicy()
        self.stats_every_batches = stats_every_batches
        self._state = ControllerState.STOPPED
        self._lifecycle_lock = threading.Lock()
        self._counters_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._current_backoff_ms = self.backoff.base_ms
        self._started_at: datetime | None = None
        self._started_monotonic: float | None = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == ControllerState.RUNNING

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._state == ControllerState.RUNNING:
                logger.debug("Controller already running")
                return
            self._stop_event = threading.Event()
            self._started_at = utc_now()
            self._started_monotonic = time.monotonic()
            self._current_backoff_ms = self.backoff.base_ms
            self._state = ControllerState.RUNNING
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="ingestion-controller",
                daemon=True,
            )
            self._thread.start()
        logger.info("Controller started")

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop and wait for the in-flight batch to finish."""

        with self._lifecycle_lock:
            if self._state == ControllerState.STOPPED:
                return
            self._stop_event.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
            self._thread = None
            self._state = ControllerState.STOPPED
        logger.info("Controller stopped after %d batch(es)", self._total)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop is requested; returns True when it was."""

        return self._stop_event.wait(timeout)

    def request_stop(self) -> None:
        self._stop_event.set()

    def status(self) -> ServiceStatus:
        with self._counters_lock:
            total = self._total
            uptime_ms = 0
            if self._started_monotonic is not None and self.running:
                uptime_ms = int((time.monotonic() - self._started_monotonic) * 1000)
            return ServiceStatus(
                running=self.running,
                total_batches=total,
                successful_batches=self._successful,
                failed_batches=self._failed,
                success_rate=self._successful / total if total else 0.0,
                started_at=self._started_at,
                uptime_ms=uptime_ms,
                current_backoff_ms=self._current_backoff_ms,
                consecutive_failures=self._consecutive_failures,
                last_error=self._last_error,
            )

    def run_batch(self) -> bool:
        """Run one batch and update counters and backoff; never raises."""

        error: str | None = None
        try:
            outcome = self.batch.run()
            succeeded = outcome.succeeded
            if not succeeded:
                error = outcome.error or "batch reported failure"
        except Exception as exc:  # noqa: BLE001
            logger.exception("Batch raised an unexpected error")
            succeeded = False
            error = f"{type(exc).__name__}: {exc}"

        with self._counters_lock:
            self._total += 1
            if succeeded:
                self._successful += 1
                self._consecutive_failures = 0
                self._current_backoff_ms = self.backoff.after_success()
            else:
                self._failed += 1
                self._consecutive_failures += 1
                self._last_error = error
                self._current_backoff_ms = self.backoff.after_failure(self._current_backoff_ms)
            total = self._total

        if not succeeded:
            logger.warning(
                "Batch failed (%d in a row), next attempt in %d ms: %s",
                self._consecutive_failures,
                self._current_backoff_ms,
                error,
            )
        if self.stats_every_batches > 0 and total % self.stats_every_batches == 0:
            self._log_stats()
        return succeeded

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.run_batch()
            stop_event.wait(self._current_backoff_ms / 1000)

    def _log_stats(self) -> None:
        status = self.status()
        logger.info(
            "Controller stats: batches=%d ok=%d failed=%d success_rate=%.2f "
            "uptime_ms=%d backoff_ms=%d",
            status.total_batches,
            status.successful_batches,
            status.failed_batches,
            status.success_rate,
            status.uptime_ms,
            status.current_backoff_ms,
        )
