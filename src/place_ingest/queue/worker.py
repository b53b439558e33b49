"""Queue workers that claim update tasks and refresh place enrichments."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta

from place_ingest.ingestion.errors import NotFoundError
from place_ingest.ingestion.repository import PlaceRepository
from place_ingest.ingestion.sources.base import EnrichmentClient
from place_ingest.queue.models import TaskStatus, TaskView, WorkerStatus
from place_ingest.queue.repository import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    not_found: int = 0
    retried: int = 0
    failed: int = 0
    idle_polls: int = 0
    errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.not_found += other.not_found
        self.retried += other.retried
        self.failed += other.failed
        self.idle_polls += other.idle_polls
        self.errors += other.errors


class TaskExecutor:
    """Executes one update task against the stored place."""

    def __init__(self, *, repository: PlaceRepository, enrichment_client: EnrichmentClient) -> None:
        self.repository = repository
        self.enrichment_client = enrichment_client

    def execute(self, task: TaskView) -> int:
        """Refresh the flagged sections; returns the number of sections stored."""

        place = self.repository.get_place(task.target_id)
        if place is None:
            raise NotFoundError(f"Place {task.target_id} is not stored", target_id=task.target_id)
        if task.flags.is_empty():
            return 0
        payload = self.enrichment_client.enrich(place.target(), task.flags)
        return self.repository.save_enrichment(place.place_id, payload)

    def remove_target(self, target_id: str) -> int:
        return self.repository.delete_by_identity(target_id)


class QueueWorker:
    """Claim -> execute -> resolve loop for one worker identity."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: TaskQueue,
        executor: TaskExecutor,
        worker_id: str,
        hostname: str,
        threads: int = 1,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 10.0,
        stop_event: threading.Event | None = None,
        maintenance: bool = False,
        stale_worker_seconds: int = 120,
        stale_task_seconds: int = 1_800,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id
        self.hostname = hostname
        self.threads = threads
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.stop_event = stop_event or threading.Event()
        self.maintenance = maintenance
        self.stale_worker_seconds = stale_worker_seconds
        self.stale_task_seconds = stale_task_seconds
        self.status = WorkerStatus.STOPPED
        self._last_heartbeat = 0.0
        self._registered = False

    def start(self) -> None:
        """Register the worker row with status `starting`."""

        self.queue.register_worker(self.worker_id, hostname=self.hostname, threads=self.threads)
        self._registered = True
        self.status = WorkerStatus.STARTING
        self._last_heartbeat = time.monotonic()
        logger.info("Worker %s started on %s", self.worker_id, self.hostname)

    def shutdown(self) -> None:
        """Mark the worker stopping, then stopped, and remove its row."""

        if not self._registered:
            self.status = WorkerStatus.STOPPED
            return
        self._set_status(WorkerStatus.STOPPING)
        self._set_status(WorkerStatus.STOPPED)
        self.queue.unregister_worker(self.worker_id)
        self._registered = False
        logger.info("Worker %s stopped", self.worker_id)

    def request_stop(self) -> None:
        self.stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Claim and execute at most one task.

        A claimed task always ends in `complete`, `complete_not_found` or
        `fail`; worker counters are updated even when resolving raises.
        """

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        self._maybe_maintain()
        task = self.queue.claim_next(self.worker_id)
        if task is None:
            summary.idle_polls = 1
            self._set_status(WorkerStatus.IDLE)
            return summary

        summary.processed = 1
        self._set_status(WorkerStatus.ACTIVE, current_task_id=task.task_id)
        failed = 0
        try:
            self._execute(task, summary)
        except Exception as error:  # noqa: BLE001
            failed = 1
            self._fail(task, error, summary)
        finally:
            self._update_counters(processed=1, failed=failed)
        return summary

    def _execute(self, task: TaskView, summary: WorkerRunSummary) -> None:
        try:
            stored = self.executor.execute(task)
        except NotFoundError as error:
            removed = self.executor.remove_target(task.target_id)
            self.queue.complete_not_found(task.task_id, reason=str(error))
            summary.not_found = 1
            logger.info(
                "Task %s: target %s not found (removed=%d)",
                task.task_id,
                task.target_id,
                removed,
            )
            return
        self.queue.complete(task.task_id)
        summary.succeeded = 1
        logger.debug("Task %s completed with %d section(s)", task.task_id, stored)

    def _fail(self, task: TaskView, error: Exception, summary: WorkerRunSummary) -> None:
        outcome = self.queue.fail(task.task_id, f"{type(error).__name__}: {error}")
        if outcome is not None and outcome.status == TaskStatus.RETRYING:
            summary.retried = 1
            logger.warning(
                "Task %s attempt %d failed, retry at %s: %s",
                task.task_id,
                outcome.attempts,
                outcome.scheduled_at.isoformat() if outcome.scheduled_at else "?",
                error,
            )
        else:
            summary.failed = 1
            logger.error("Task %s failed: %s", task.task_id, error)

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, `max_tasks` processed or `max_idle_polls` consecutive empty polls.

        An iteration that raises resolves no task, so it counts as an empty poll.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        if not self._registered:
            self.start()
        self._set_status(WorkerStatus.ACTIVE)
        try:
            while not self.stop_event.is_set():
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break
                try:
                    summary = self.run_once()
                except Exception:
                    logger.exception("Worker %s loop iteration failed", self.worker_id)
                    summary = WorkerRunSummary(errors=1)
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self.stop_event.wait(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        finally:
            self.shutdown()
        return aggregate

    def _set_status(self, status: WorkerStatus, *, current_task_id: str | None = None) -> None:
        changed = status != self.status
        self.status = status
        if not self._registered:
            return
        if changed or current_task_id is not None or self._heartbeat_due():
            self.queue.update_worker(
                self.worker_id,
                status=status,
                current_task_id=current_task_id,
                clear_current_task=current_task_id is None and status != WorkerStatus.ACTIVE,
            )
            self._last_heartbeat = time.monotonic()

    def _update_counters(self, *, processed: int, failed: int) -> None:
        self.queue.update_worker(
            self.worker_id,
            clear_current_task=True,
            processed_delta=processed,
            failed_delta=failed,
        )
        self._last_heartbeat = time.monotonic()

    def _heartbeat_due(self) -> bool:
        return time.monotonic() - self._last_heartbeat >= self.heartbeat_interval_seconds

    def _maybe_maintain(self) -> None:
        if not self.maintenance or not self._heartbeat_due():
            return
        self.queue.cleanup_stale_workers(timedelta(seconds=self.stale_worker_seconds))
        if self.stale_task_seconds > 0:
            self.queue.recover_stale_processing(timedelta(seconds=self.stale_task_seconds))


class WorkerPool:
    """Fixed-size pool of queue workers, one thread and one registry row each."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: TaskQueue,
        executor: TaskExecutor,
        worker_id: str,
        hostname: str,
        threads: int = 2,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 10.0,
        stale_worker_seconds: int = 120,
        stale_task_seconds: int = 1_800,
    ) -> None:
        if threads <= 0:
            raise ValueError("threads must be a positive integer.")
        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id
        self.hostname = hostname
        self.threads = threads
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.stale_worker_seconds = stale_worker_seconds
        self.stale_task_seconds = stale_task_seconds
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._workers: list[QueueWorker] = []
        self._summaries: list[WorkerRunSummary] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def workers(self) -> list[QueueWorker]:
        return list(self._workers)

    def start(self, *, max_tasks: int | None = None, max_idle_polls: int | None = None) -> None:
        """Spawn one thread per worker; limits apply to each worker separately."""

        with self._lock:
            if self.running:
                return
            self._stop_event = threading.Event()
            self._workers = []
            self._threads = []
            self._summaries = []
            for index in range(self.threads):
                worker = QueueWorker(
                    queue=self.queue,
                    executor=self.executor,
                    worker_id=f"{self.worker_id}-{index + 1}",
                    hostname=self.hostname,
                    threads=self.threads,
                    poll_interval_seconds=self.poll_interval_seconds,
                    heartbeat_interval_seconds=self.heartbeat_interval_seconds,
                    stop_event=self._stop_event,
                    maintenance=index == 0,
                    stale_worker_seconds=self.stale_worker_seconds,
                    stale_task_seconds=self.stale_task_seconds,
                )
                worker.start()
                thread = threading.Thread(
                    target=self._run_worker,
                    args=(worker, max_tasks, max_idle_polls),
                    name=f"queue-worker-{index + 1}",
                    daemon=True,
                )
                self._workers.append(worker)
                self._threads.append(thread)
            for thread in self._threads:
                thread.start()
        logger.info("Worker pool %s started with %d thread(s)", self.worker_id, self.threads)

    def stop(self, timeout: float | None = None) -> WorkerRunSummary:
        """Signal all workers and wait for in-flight tasks to finish."""

        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        summary = self.summary()
        logger.info(
            "Worker pool %s stopped: processed=%d succeeded=%d not_found=%d retried=%d failed=%d",
            self.worker_id,
            summary.processed,
            summary.succeeded,
            summary.not_found,
            summary.retried,
            summary.failed,
        )
        return summary

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)

    def summary(self) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        with self._lock:
            for item in self._summaries:
                aggregate.add(item)
        return aggregate

    def _run_worker(
        self,
        worker: QueueWorker,
        max_tasks: int | None,
        max_idle_polls: int | None,
    ) -> None:
        summary = worker.run_loop(max_tasks=max_tasks, max_idle_polls=max_idle_polls)
        with self._lock:
            self._summaries.append(summary)
