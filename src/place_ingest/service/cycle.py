"""One controller batch: a pipeline chunk, a queue drain, or both."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from place_ingest.config import CYCLE_MODES
from place_ingest.ingestion.errors import ChunkAbortedError
from place_ingest.ingestion.models import ChunkResult
from place_ingest.ingestion.pipeline import ChunkPipeline
from place_ingest.queue.worker import QueueWorker, WorkerRunSummary

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleResult:
    mode: str
    chunk: ChunkResult | None = None
    drained: WorkerRunSummary | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        if self.error is not None:
            return False
        drained = self.drained
        if drained is None or drained.processed == 0:
            return True
        return drained.failed + drained.retried < drained.processed


class IngestionCycle:
    """Runs one batch according to the configured cycle mode."""

    def __init__(
        self,
        *,
        mode: str,
        pipeline: ChunkPipeline | None,
        chunk_size: int,
        drain_worker: QueueWorker | None = None,
        drain_max_tasks: int = 20,
    ) -> None:
        if mode not in CYCLE_MODES:
            raise ValueError(f"Unknown cycle mode: {mode!r}")
        if mode in {"pipeline", "both"} and pipeline is None:
            raise ValueError(f"Cycle mode {mode!r} requires a chunk pipeline.")
        if mode in {"queue", "both"} and drain_worker is None:
            raise ValueError(f"Cycle mode {mode!r} requires a drain worker.")
        self.mode = mode
        self.pipeline = pipeline
        self.chunk_size = chunk_size
        self.drain_worker = drain_worker
        self.drain_max_tasks = drain_max_tasks

    def run(self) -> CycleResult:
        result = CycleResult(mode=self.mode)
        if self.pipeline is not None and self.mode in {"pipeline", "both"}:
            try:
                result.chunk = self.pipeline.process(self.chunk_size)
            except ChunkAbortedError as error:
                result.chunk = error.result
                result.error = f"chunk aborted ({error.cause_kind}): {error.message}"
                logger.warning("Chunk aborted: %s", error.message)
        if self.drain_worker is not None and self.mode in {"queue", "both"}:
            try:
                result.drained = self.drain_worker.run_loop(
                    max_tasks=self.drain_max_tasks,
                    max_idle_polls=1,
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Queue drain failed")
                result.error = result.error or (
                    f"queue drain failed: {type(error).__name__}: {error}"
                )
                return result
            if result.drained.errors:
                result.error = result.error or (
                    f"queue drain hit {result.drained.errors} worker error(s)"
                )
            if result.drained.processed:
                logger.info(
                    "Drained %d task(s): succeeded=%d not_found=%d retried=%d failed=%d",
                    result.drained.processed,
                    result.drained.succeeded,
                    result.drained.not_found,
                    result.drained.retried,
                    result.drained.failed,
                )
        return result
