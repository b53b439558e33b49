"""Controllers for batch and checkpoint CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from place_ingest.config import Settings
from place_ingest.ingestion.models import ChunkResult
from place_ingest.service.app import Application, build_application
from place_ingest.service.cycle import CycleResult


@dataclass(slots=True)
class BatchOnceCommand:
    """CLI inputs for a single batch cycle."""

    db_path: Path | None
    mode: str | None
    chunk_size: int | None


@dataclass(slots=True)
class CheckpointShowCommand:
    """CLI inputs for checkpoint inspection."""

    db_path: Path | None
    job_name: str | None


class IngestionCliController:
    """Coordinates batch and checkpoint command execution."""

    def batch_once(self, command: BatchOnceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.mode is not None:
            settings.batch.cycle_mode = command.mode
        if command.chunk_size is not None:
            settings.batch.chunk_size = command.chunk_size
        settings.queue.worker_enabled = False
        settings.validate()

        with _application(settings) as app:
            result = app.cycle.run()
        return _render_cycle(result)

    def show_checkpoint(self, command: CheckpointShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        job_name = command.job_name or settings.batch.job_name
        with _application(settings) as app:
            checkpoint = app.checkpoints.load(job_name)

        if checkpoint is None:
            return [f"No checkpoint for job {job_name}."]
        lines = [
            f"Checkpoint: job={checkpoint.job_name} "
            f"page={checkpoint.last_processed_page} "
            f"total={checkpoint.total_processed_records} "
            f"status={_value(checkpoint.last_execution_status)}",
            "Last processed: "
            + (
                checkpoint.last_processed_timestamp.isoformat()
                if checkpoint.last_processed_timestamp
                else "-"
            ),
        ]
        state = checkpoint.regional_state
        if state is not None:
            lines.append(
                "Position: "
                f"region={state.current_region or '-'} "
                f"coordinate={state.coordinate_index} query={state.query_index} "
                f"page={state.page} offset={state.item_offset} pass={state.pass_number}",
            )
            lines.append(
                "Completed regions: "
                + (", ".join(state.completed_regions) if state.completed_regions else "-"),
            )
            for error in state.errors[-5:]:
                lines.append(f"  error: {error}")
        return lines


@contextmanager
def _application(settings: Settings) -> Iterator[Application]:
    app = build_application(settings)
    try:
        yield app
    finally:
        app.close()


def _render_cycle(result: CycleResult) -> list[str]:
    lines = [f"Batch {'completed' if result.succeeded else 'failed'}: mode={result.mode}"]
    if result.chunk is not None:
        lines.append(_render_chunk(result.chunk))
    if result.drained is not None:
        drained = result.drained
        lines.append(
            "Queue drain: "
            f"processed={drained.processed} succeeded={drained.succeeded} "
            f"not_found={drained.not_found} retried={drained.retried} failed={drained.failed}",
        )
    if result.error:
        lines.append(f"Error: {result.error}")
    return lines


def _render_chunk(chunk: ChunkResult) -> str:
    return (
        "Chunk: "
        f"read={chunk.read} processed={chunk.processed} skipped={chunk.skipped} "
        f"filtered={chunk.filtered} deleted={chunk.deleted} failed={chunk.failed} "
        f"pages={chunk.pages_committed} end_of_pass={'yes' if chunk.end_of_pass else 'no'}"
    )


def _value(item: object | None) -> str:
    if item is None:
        return "-"
    return str(getattr(item, "value", item))
