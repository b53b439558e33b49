"""CLI entrypoint for place-ingest."""

import logging
from pathlib import Path

import rich_click as click

from place_ingest import __version__
from place_ingest.config import CYCLE_MODES
from place_ingest.ingestion.controllers import (
    BatchOnceCommand,
    CheckpointShowCommand,
    IngestionCliController,
)
from place_ingest.queue.controllers import (
    QueueCleanupCommand,
    QueueCliController,
    QueueEnqueueCommand,
    QueueProgressCommand,
    QueueRetryFailedCommand,
    QueueStatsCommand,
    QueueWorkerCommand,
)
from place_ingest.queue.models import PRIORITY_HIGH, PRIORITY_NORMAL
from place_ingest.service.controllers import RunServiceCommand, ServiceCliController

click.rich_click.USE_MARKDOWN = True
INGESTION_CONTROLLER = IngestionCliController()
QUEUE_CONTROLLER = QueueCliController()
SERVICE_CONTROLLER = ServiceCliController()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="place-ingest")
def place_ingest() -> None:
    """Place ingestion and enrichment update CLI."""


@place_ingest.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--mode",
    type=click.Choice(CYCLE_MODES),
    default=None,
    help="Batch cycle mode. Defaults to PLACE_INGEST_CYCLE_MODE.",
)
@click.option(
    "--worker-threads",
    type=click.IntRange(min=1),
    default=None,
    help="Worker pool size. Defaults to PLACE_INGEST_WORKER_THREADS.",
)
@click.option(
    "--no-workers",
    is_flag=True,
    default=False,
    help="Run only the controller loop without the background worker pool.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop automatically after this many seconds.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def run_service(  # noqa: PLR0913
    db_path: Path | None,
    mode: str | None,
    worker_threads: int | None,
    no_workers: bool,
    max_seconds: float | None,
    log_level: str,
) -> None:
    """Run the continuous controller and the worker pool until SIGINT/SIGTERM."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _emit_lines(
        SERVICE_CONTROLLER.run(
            RunServiceCommand(
                db_path=db_path,
                mode=mode,
                worker_threads=worker_threads,
                no_workers=no_workers,
                max_seconds=max_seconds,
            ),
        ),
    )


@place_ingest.group()
def batch() -> None:
    """Single batch commands."""


@batch.command("once")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--mode",
    type=click.Choice(CYCLE_MODES),
    default=None,
    help="Batch cycle mode. Defaults to PLACE_INGEST_CYCLE_MODE.",
)
@click.option(
    "--chunk-size",
    type=click.IntRange(min=1),
    default=None,
    help="Records per chunk. Defaults to PLACE_INGEST_CHUNK_SIZE.",
)
def batch_once(db_path: Path | None, mode: str | None, chunk_size: int | None) -> None:
    """Run one batch cycle and print the chunk result."""

    _emit_lines(
        INGESTION_CONTROLLER.batch_once(
            BatchOnceCommand(db_path=db_path, mode=mode, chunk_size=chunk_size),
        ),
    )


@place_ingest.group()
def checkpoint() -> None:
    """Job checkpoint commands."""


@checkpoint.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--job-name",
    default=None,
    help="Job name. Defaults to PLACE_INGEST_JOB_NAME.",
)
def checkpoint_show(db_path: Path | None, job_name: str | None) -> None:
    """Show the stored checkpoint and scanner position of a job."""

    _emit_lines(
        INGESTION_CONTROLLER.show_checkpoint(
            CheckpointShowCommand(db_path=db_path, job_name=job_name),
        ),
    )


@place_ingest.group()
def queue() -> None:
    """Update queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--target-id",
    "target_ids",
    multiple=True,
    required=True,
    help="Stored place id to refresh. Can be repeated.",
)
@click.option("--menus", is_flag=True, default=False, help="Refresh menus.")
@click.option("--images", is_flag=True, default=False, help="Refresh images.")
@click.option("--reviews", is_flag=True, default=False, help="Refresh reviews.")
@click.option(
    "--priority",
    type=click.IntRange(min=PRIORITY_NORMAL, max=PRIORITY_HIGH),
    default=PRIORITY_NORMAL,
    show_default=True,
    help="0 = normal, 1 = high.",
)
def queue_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    target_ids: tuple[str, ...],
    menus: bool,
    images: bool,
    reviews: bool,
    priority: int,
) -> None:
    """Enqueue enrichment update tasks. Without flags every section is refreshed."""

    _emit_lines(
        QUEUE_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                target_ids=target_ids,
                menus=menus,
                images=images,
                reviews=reviews,
                priority=priority,
            ),
        ),
    )


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--show-workers/--no-show-workers",
    default=True,
    show_default=True,
    help="List registered workers.",
)
def queue_stats(db_path: Path | None, show_workers: bool) -> None:
    """Show queue counters and registered workers."""

    _emit_lines(
        QUEUE_CONTROLLER.stats(QueueStatsCommand(db_path=db_path, show_workers=show_workers)),
    )


@queue.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--threads",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads. Defaults to PLACE_INGEST_WORKER_THREADS.",
)
@click.option("--once", is_flag=True, default=False, help="Process at most one task and exit.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop each worker after this many tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop each worker after this many consecutive empty polls.",
)
def queue_worker(
    db_path: Path | None,
    threads: int | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the worker pool against the update queue."""

    _emit_lines(
        QUEUE_CONTROLLER.run_worker(
            QueueWorkerCommand(
                db_path=db_path,
                threads=threads,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@queue.command("progress")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--show-events/--no-show-events",
    default=False,
    show_default=True,
    help="Print the task event trail.",
)
def queue_progress(db_path: Path | None, task_id: str, show_events: bool) -> None:
    """Show per-attempt progress of one task."""

    _emit_lines(
        QUEUE_CONTROLLER.progress(
            QueueProgressCommand(db_path=db_path, task_id=task_id, show_events=show_events),
        ),
    )


@queue.command("retry-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_retry_failed(db_path: Path | None) -> None:
    """Enqueue fresh tasks for targets whose tasks failed permanently."""

    _emit_lines(QUEUE_CONTROLLER.retry_failed(QueueRetryFailedCommand(db_path=db_path)))


@queue.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-worker-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Heartbeat age after which a worker row is removed.",
)
@click.option(
    "--stale-task-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Processing age after which a task is recovered as a failed attempt.",
)
@click.option(
    "--purge-completed-days",
    type=click.IntRange(min=0),
    default=None,
    help="Also delete completed tasks older than this many days.",
)
def queue_cleanup(
    db_path: Path | None,
    stale_worker_seconds: int | None,
    stale_task_seconds: int | None,
    purge_completed_days: int | None,
) -> None:
    """Remove stale workers and recover stuck tasks."""

    _emit_lines(
        QUEUE_CONTROLLER.cleanup(
            QueueCleanupCommand(
                db_path=db_path,
                stale_worker_seconds=stale_worker_seconds,
                stale_task_seconds=stale_task_seconds,
                purge_completed_days=purge_completed_days,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    place_ingest()
