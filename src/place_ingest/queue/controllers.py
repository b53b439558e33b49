"""Controllers for update queue CLI commands."""

from __future__ import annotations

import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from place_ingest.config import Settings
from place_ingest.ingestion.models import WorkFlags
from place_ingest.queue.models import QueueStats, TaskView
from place_ingest.queue.worker import QueueWorker, WorkerPool, WorkerRunSummary
from place_ingest.service.app import Application, build_application
from place_ingest.service.signals import stop_on_signals


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI inputs for enqueueing update tasks."""

    db_path: Path | None
    target_ids: tuple[str, ...]
    menus: bool
    images: bool
    reviews: bool
    priority: int


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None
    show_workers: bool


@dataclass(slots=True)
class QueueWorkerCommand:
    """CLI inputs for the worker pool command."""

    db_path: Path | None
    threads: int | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class QueueProgressCommand:
    db_path: Path | None
    task_id: str
    show_events: bool


@dataclass(slots=True)
class QueueRetryFailedCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueCleanupCommand:
    """CLI inputs for stale worker/task cleanup and completed task purge."""

    db_path: Path | None
    stale_worker_seconds: int | None
    stale_task_seconds: int | None
    purge_completed_days: int | None


class QueueCliController:
    """Coordinates queue, worker and inspection CLI operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        flags = WorkFlags(menus=command.menus, images=command.images, reviews=command.reviews)
        if flags.is_empty():
            flags = WorkFlags.all()
        target_ids = tuple(
            dict.fromkeys(item.strip() for item in command.target_ids if item.strip()),
        )
        if not target_ids:
            raise ValueError("At least one non-empty --target-id is required.")

        settings = Settings.from_env(db_path=command.db_path)
        with _application(settings) as app:
            if len(target_ids) == 1:
                tasks = [app.enqueue(target_ids[0], flags, command.priority)]
            else:
                tasks = app.task_queue.enqueue_many(target_ids, flags, command.priority)
        return [_render_enqueued(task) for task in tasks]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _application(settings) as app:
            stats = app.queue_stats()
        return _render_stats(stats, show_workers=command.show_workers)

    def run_worker(self, command: QueueWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.threads is not None:
            settings.queue.worker_threads = command.threads
        settings.validate()
        queue_settings = settings.queue

        with _application(settings) as app:
            if command.once:
                worker = QueueWorker(
                    queue=app.task_queue,
                    executor=app.executor,
                    worker_id=queue_settings.worker_id,
                    hostname=socket.gethostname(),
                    poll_interval_seconds=queue_settings.poll_interval_seconds,
                )
                worker.start()
                try:
                    summary = worker.run_once()
                finally:
                    worker.shutdown()
            else:
                summary = _run_pool(
                    app.worker_pool or _pool_for(app),
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"not_found={summary.not_found} retried={summary.retried} "
            f"failed={summary.failed} idle_polls={summary.idle_polls} errors={summary.errors}",
        ]

    def progress(self, command: QueueProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _application(settings) as app:
            details = app.task_queue.get_task_details(command.task_id)
        if details is None:
            raise ValueError(f"Task not found: {command.task_id}")

        task = details.task
        lines = [
            f"Task: {task.task_id} target={task.target_id} status={task.status.value} "
            f"priority={task.priority} attempts={task.attempts}/{task.max_attempts}",
            f"Flags: {_render_flags(task.flags)}",
            f"Scheduled: {task.scheduled_at.isoformat()} worker={task.worker_id or '-'}",
            f"Last error: {task.last_error or '-'}",
        ]
        lines.append(f"Attempts: {len(details.progress)}")
        for item in details.progress:
            lines.append(
                f"  #{item.attempt} status={item.status.value} worker={item.worker_id or '-'} "
                f"start={item.start_time.isoformat()} "
                f"end={item.end_time.isoformat() if item.end_time else '-'} "
                f"error={item.last_error or '-'}",
            )
        if command.show_events:
            lines.append(f"Events: {len(details.events)}")
            for event in details.events:
                transition = (
                    f"{event.status_from.value if event.status_from else '-'}"
                    f"->{event.status_to.value if event.status_to else '-'}"
                )
                lines.append(
                    f"  {event.created_at.isoformat()} {event.event_type} {transition}",
                )
        return lines

    def retry_failed(self, command: QueueRetryFailedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _application(settings) as app:
            tasks = app.task_queue.retry_failed()
        lines = [f"Requeued failed targets: {len(tasks)}"]
        lines.extend(f"  {_render_enqueued(task)}" for task in tasks)
        return lines

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_worker_seconds = (
            command.stale_worker_seconds
            if command.stale_worker_seconds is not None
            else settings.queue.stale_worker_seconds
        )
        stale_task_seconds = (
            command.stale_task_seconds
            if command.stale_task_seconds is not None
            else settings.queue.stale_task_seconds
        )
        with _application(settings) as app:
            removed = app.task_queue.cleanup_stale_workers(timedelta(seconds=stale_worker_seconds))
            recovered = app.task_queue.recover_stale_processing(
                timedelta(seconds=stale_task_seconds),
            )
            purged = (
                app.task_queue.purge_completed(timedelta(days=command.purge_completed_days))
                if command.purge_completed_days is not None
                else 0
            )
        lines = [
            f"Cleanup: stale_workers={len(removed)} recovered_tasks={recovered} "
            f"purged_completed={purged}",
        ]
        lines.extend(f"  removed worker {worker_id}" for worker_id in removed)
        return lines


@contextmanager
def _application(settings: Settings) -> Iterator[Application]:
    app = build_application(settings)
    try:
        yield app
    finally:
        app.close()


def _pool_for(app: Application) -> WorkerPool:
    queue_settings = app.settings.queue
    return WorkerPool(
        queue=app.task_queue,
        executor=app.executor,
        worker_id=queue_settings.worker_id,
        hostname=socket.gethostname(),
        threads=queue_settings.worker_threads,
        poll_interval_seconds=queue_settings.poll_interval_seconds,
        heartbeat_interval_seconds=queue_settings.heartbeat_interval_seconds,
        stale_worker_seconds=queue_settings.stale_worker_seconds,
        stale_task_seconds=queue_settings.stale_task_seconds,
    )


def _run_pool(
    pool: WorkerPool,
    *,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> WorkerRunSummary:
    pool.start(max_tasks=max_tasks, max_idle_polls=max_idle_polls)
    with stop_on_signals(lambda _name: pool.request_stop()):
        while pool.running:
            pool.wait(timeout=0.2)
    return pool.stop()


def _render_enqueued(task: TaskView) -> str:
    return (
        "Task enqueued: "
        f"task_id={task.task_id} target={task.target_id} priority={task.priority} "
        f"flags={_render_flags(task.flags)} status={task.status.value}"
    )


def _render_flags(flags: WorkFlags) -> str:
    return ",".join(kind.value for kind in flags.kinds()) or "-"


def _render_stats(stats: QueueStats, *, show_workers: bool) -> list[str]:
    lines = [
        "Queue: "
        f"pending={stats.pending_count} priority={stats.priority_count} "
        f"processing={stats.processing_count} retrying={stats.retrying_count} "
        f"completed={stats.completed_count} failed={stats.failed_count}",
        f"Workers: active={stats.active_workers} total={stats.total_workers}",
        f"Updated: {stats.last_updated.isoformat()}",
    ]
    if show_workers:
        for worker in stats.workers:
            lines.append(
                f"  {worker.worker_id} host={worker.hostname} status={worker.status.value} "
                f"processed={worker.tasks_processed} failed={worker.tasks_failed} "
                f"current={worker.current_task_id or '-'} "
                f"heartbeat={worker.last_heartbeat.isoformat()}",
            )
    return lines
