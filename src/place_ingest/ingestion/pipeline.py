"""Resumable chunk pipeline: read, normalize, filter, enrich, write, checkpoint."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from place_ingest.ingestion.checkpoint import CheckpointStore
from place_ingest.ingestion.errors import ChunkAbortedError, NotFoundError, StorageError
from place_ingest.ingestion.filtering import PlaceFilter
from place_ingest.ingestion.models import (
    ChunkResult,
    ChunkWrite,
    EnrichmentPayload,
    ExecutionStatus,
    JobCheckpoint,
    PlaceRecord,
    Region,
    SearchContext,
    WorkFlags,
)
from place_ingest.ingestion.normalize import normalize_place
from place_ingest.ingestion.repository import PlaceRepository
from place_ingest.ingestion.scanner import RegionScanner
from place_ingest.ingestion.skip_policy import (
    FaultDecision,
    RetryLimits,
    SkipBudget,
    call_with_retries,
    classify,
    decide,
)
from place_ingest.ingestion.sources.base import EnrichmentClient, SearchClient
from place_ingest.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Candidate:
    context: SearchContext
    raw: dict[str, Any]


@dataclass(slots=True)
class _ItemOutcome:
    place: PlaceRecord | None = None
    payload: EnrichmentPayload | None = None
    delete_id: str | None = None
    filtered_reason: str | None = None
    error: Exception | None = None


class ChunkPipeline:
    """Processes one chunk per call and checkpoints after the chunk commits.

    The scanner cursor is restored from the job checkpoint at the start of every
    call, so an aborted chunk is replayed from the last committed position.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_name: str,
        search_client: SearchClient,
        enrichment_client: EnrichmentClient,
        repository: PlaceRepository,
        checkpoints: CheckpointStore,
        regions: tuple[Region, ...],
        place_filter: PlaceFilter | None = None,
        work_flags: WorkFlags | None = None,
        max_pages: int = 5,
        skip_limit: int = 50,
        concurrency_limit: int = 4,
        retry_limits: RetryLimits | None = None,
        retry_delay_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.job_name = job_name
        self.search_client = search_client
        self.enrichment_client = enrichment_client
        self.repository = repository
        self.checkpoints = checkpoints
        self.regions = regions
        self.place_filter = place_filter or PlaceFilter()
        self.work_flags = work_flags if work_flags is not None else WorkFlags.all()
        self.max_pages = max_pages
        self.skip_limit = skip_limit
        self.concurrency_limit = max(1, concurrency_limit)
        self.retry_limits = retry_limits or RetryLimits()
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    def process(self, batch_size: int) -> ChunkResult:
        """Process up to `batch_size` candidate records as one chunk.

        Raises `ChunkAbortedError` when a fault cannot be skipped; nothing of
        the chunk is persisted in that case.
        """

        if batch_size <= 0:
            raise ValueError("batch_size must be a positive integer.")

        checkpoint = self.checkpoints.load(self.job_name)
        scanner = RegionScanner(
            self.regions,
            max_pages=self.max_pages,
            state=copy.deepcopy(checkpoint.regional_state) if checkpoint is not None else None,
        )
        budget = SkipBudget(limit=self.skip_limit, used=self._skips_so_far(checkpoint))
        result = ChunkResult()

        try:
            candidates, pages_completed = self._read(scanner, batch_size, budget, result)
            result.read = len(candidates)
            result.end_of_pass = scanner.is_pass_complete()

            outcomes = self._process_items(candidates)
            write = self._resolve(outcomes, budget, result)

            try:
                written = self.repository.apply_chunk(write, job_name=self.job_name)
            except StorageError as error:
                result.failed += len(write.upserts) + len(write.deletes)
                raise ChunkAbortedError(
                    f"Chunk write failed for job {self.job_name}: {error}",
                    result=result,
                    cause_kind=classify(error).value,
                ) from error
            result.processed = len(write.upserts)
            result.deleted = written.deleted
            result.pages_committed = pages_completed
        except ChunkAbortedError:
            self._mark_failed(checkpoint)
            raise

        scanner.state.skipped_total = budget.used
        if result.end_of_pass:
            scanner.start_new_pass()
        scanner.state.total_processed += result.processed
        previous_page = checkpoint.last_processed_page if checkpoint is not None else 0
        previous_total = checkpoint.total_processed_records if checkpoint is not None else 0
        try:
            self.checkpoints.save(
                self.job_name,
                JobCheckpoint(
                    job_name=self.job_name,
                    last_processed_page=previous_page + pages_completed,
                    last_processed_timestamp=utc_now(),
                    total_processed_records=previous_total + result.processed,
                    last_execution_status=(
                        ExecutionStatus.PASS_COMPLETED
                        if result.end_of_pass
                        else ExecutionStatus.COMPLETED
                    ),
                    regional_state=scanner.state,
                ),
            )
        except StorageError as error:
            raise ChunkAbortedError(
                f"Checkpoint save failed for job {self.job_name}: {error}",
                result=result,
                cause_kind=classify(error).value,
            ) from error

        logger.info(
            "Chunk done for %s: read=%d processed=%d skipped=%d filtered=%d deleted=%d "
            "pages=%d end_of_pass=%s skip_budget=%d/%d",
            self.job_name,
            result.read,
            result.processed,
            result.skipped,
            result.filtered,
            result.deleted,
            result.pages_committed,
            result.end_of_pass,
            budget.used,
            budget.limit,
        )
        return result

    @staticmethod
    def _skips_so_far(checkpoint: JobCheckpoint | None) -> int:
        """Skips already spent by the current execution of the job.

        A failed checkpoint means the previous execution aborted, so this call
        restarts the job from the committed position with a fresh budget.
        """

        if checkpoint is None or checkpoint.regional_state is None:
            return 0
        if checkpoint.last_execution_status == ExecutionStatus.FAILED:
            logger.info("Restarting job %s after a failed execution", checkpoint.job_name)
            return 0
        return checkpoint.regional_state.skipped_total

    def _read(
        self,
        scanner: RegionScanner,
        batch_size: int,
        budget: SkipBudget,
        result: ChunkResult,
    ) -> tuple[list[_Candidate], int]:
        candidates: list[_Candidate] = []
        pages_completed = 0
        while len(candidates) < batch_size:
            context = scanner.current()
            if context is None:
                break
            try:
                page = call_with_retries(
                    lambda context=context: self.search_client.search(
                        context.region,
                        context.coordinate,
                        context.query,
                        context.page,
                    ),
                    limits=self.retry_limits,
                    delay_seconds=self.retry_delay_seconds,
                    sleep=self._sleep,
                    label=f"search {context.region.code}/{context.query}/p{context.page}",
                )
            except Exception as error:  # noqa: BLE001
                kind = classify(error)
                decision = decide(
                    kind,
                    attempt=self.retry_limits.limit_for(kind),
                    skip_count=budget.used,
                    skip_limit=budget.limit,
                    limits=self.retry_limits,
                )
                if decision != FaultDecision.SKIP:
                    result.failed += 1
                    raise ChunkAbortedError(
                        f"Search failed for {context.region.code}/{context.query} "
                        f"page {context.page}: {error}",
                        result=result,
                        cause_kind=kind.value,
                    ) from error
                budget.consume()
                result.skipped += 1
                message = (
                    f"{context.region.code}/{context.coordinate_index}/{context.query}"
                    f"/p{context.page}: {kind.value}: {error}"
                )
                result.errors.append(message)
                scanner.state.record_error(message)
                logger.warning("Skipping search position after fault: %s", message)
                scanner.next_query()
                continue

            if not page.items:
                scanner.next_query()
                continue

            offset = scanner.state.item_offset
            remaining = page.items[offset:]
            take = remaining[: batch_size - len(candidates)]
            candidates.extend(_Candidate(context=context, raw=raw) for raw in take)
            if len(take) < len(remaining):
                scanner.advance_offset(len(take))
                continue

            pages_completed += 1
            if page.is_last:
                scanner.next_query()
            else:
                scanner.next_page()
        return candidates, pages_completed

    def _process_items(self, candidates: list[_Candidate]) -> list[_ItemOutcome]:
        if not candidates:
            return []
        workers = min(self.concurrency_limit, len(candidates))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk-item") as executor:
            return list(executor.map(self._process_item, candidates))

    def _process_item(self, candidate: _Candidate) -> _ItemOutcome:
        try:
            place = normalize_place(candidate.raw, region=candidate.context.region)
        except Exception as error:  # noqa: BLE001
            return _ItemOutcome(error=error)

        decision = self.place_filter.check(place)
        if decision.excluded:
            return _ItemOutcome(place=place, filtered_reason=decision.reason)

        if self.work_flags.is_empty():
            return _ItemOutcome(place=place)
        try:
            payload = call_with_retries(
                lambda: self.enrichment_client.enrich(place.target(), self.work_flags),
                limits=self.retry_limits,
                delay_seconds=self.retry_delay_seconds,
                sleep=self._sleep,
                label=f"enrich {place.place_id}",
            )
        except NotFoundError:
            return _ItemOutcome(place=place, delete_id=place.place_id)
        except Exception as error:  # noqa: BLE001
            return _ItemOutcome(place=place, error=error)
        return _ItemOutcome(place=place, payload=payload)

    def _resolve(
        self,
        outcomes: list[_ItemOutcome],
        budget: SkipBudget,
        result: ChunkResult,
    ) -> ChunkWrite:
        write = ChunkWrite()
        for outcome in outcomes:
            if outcome.error is not None:
                kind = classify(outcome.error)
                decision = decide(
                    kind,
                    attempt=self.retry_limits.limit_for(kind),
                    skip_count=budget.used,
                    skip_limit=budget.limit,
                    limits=self.retry_limits,
                )
                label = outcome.place.natural_key if outcome.place is not None else "<invalid>"
                if decision != FaultDecision.SKIP:
                    result.failed += 1
                    raise ChunkAbortedError(
                        f"Item {label} aborted the chunk ({kind.value}): {outcome.error}",
                        result=result,
                        cause_kind=kind.value,
                    ) from outcome.error
                budget.consume()
                result.skipped += 1
                result.errors.append(f"{label}: {kind.value}: {outcome.error}")
                logger.warning("Skipped item %s (%s): %s", label, kind.value, outcome.error)
                continue
            if outcome.filtered_reason is not None:
                result.filtered += 1
                logger.debug(
                    "Filtered place %s: %s",
                    outcome.place.name if outcome.place is not None else "?",
                    outcome.filtered_reason,
                )
                continue
            if outcome.delete_id is not None:
                if outcome.delete_id not in write.deletes:
                    write.deletes.append(outcome.delete_id)
                continue
            if outcome.place is None:
                continue
            write.upserts.append(outcome.place)
            if outcome.payload is not None and outcome.payload.sections:
                write.enrichments[outcome.place.place_id] = outcome.payload
        return write

    def _mark_failed(self, checkpoint: JobCheckpoint | None) -> None:
        if checkpoint is None:
            return
        checkpoint.last_execution_status = ExecutionStatus.FAILED
        try:
            self.checkpoints.save(self.job_name, checkpoint)
        except StorageError:
            logger.exception("Failed to record chunk failure for job %s", self.job_name)
