"""Controller for the long-running `run` CLI command."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from place_ingest.config import Settings
from place_ingest.service.app import build_application
from place_ingest.service.signals import stop_on_signals

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunServiceCommand:
    """CLI inputs for the continuous service."""

    db_path: Path | None
    mode: str | None
    worker_threads: int | None
    no_workers: bool
    max_seconds: float | None


class ServiceCliController:
    """Runs the controller and the worker pool until a stop signal arrives."""

    def run(self, command: RunServiceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.mode is not None:
            settings.batch.cycle_mode = command.mode
        if command.worker_threads is not None:
            settings.queue.worker_threads = command.worker_threads
        if command.no_workers:
            settings.queue.worker_enabled = False
        settings.validate()

        app = build_application(settings)
        stopped_by: list[str] = []

        def _request_stop(signal_name: str) -> None:
            stopped_by.append(signal_name)
            app.controller.request_stop()

        try:
            with stop_on_signals(_request_stop):
                app.start()
                logger.info(
                    "Service running: mode=%s workers=%s db=%s",
                    settings.batch.cycle_mode,
                    settings.queue.worker_threads if app.worker_pool is not None else 0,
                    settings.db_path,
                )
                app.controller.wait(command.max_seconds)
                app.stop()
            status = app.status()
            stats = app.queue_stats()
        finally:
            app.close()

        return [
            "Service stopped"
            + (f" by {stopped_by[0]}" if stopped_by else "")
            + f": batches={status.total_batches} ok={status.successful_batches} "
            f"failed={status.failed_batches} success_rate={status.success_rate:.2f}",
            "Queue: "
            f"pending={stats.pending_count} processing={stats.processing_count} "
            f"completed={stats.completed_count} failed={stats.failed_count}",
        ]
