"""Application wiring: builds the dependency graph once by constructor injection."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field

from place_ingest.config import Settings
from place_ingest.ingestion.checkpoint import CheckpointStore
from place_ingest.ingestion.filtering import PlaceFilter
from place_ingest.ingestion.models import WorkFlags
from place_ingest.ingestion.pipeline import ChunkPipeline
from place_ingest.ingestion.regions import load_regions
from place_ingest.ingestion.repository import PlaceRepository
from place_ingest.ingestion.skip_policy import RetryLimits
from place_ingest.ingestion.sources.base import ClosableClient, EnrichmentClient, SearchClient
from place_ingest.ingestion.sources.http import HttpEnrichmentClient, HttpSearchClient
from place_ingest.queue.models import PRIORITY_NORMAL, QueueStats, TaskView
from place_ingest.queue.repository import TaskQueue
from place_ingest.queue.worker import QueueWorker, TaskExecutor, WorkerPool
from place_ingest.service.controller import BackoffPolicy, ContinuousController, ServiceStatus
from place_ingest.service.cycle import IngestionCycle

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Application:
    """Control surface over the controller, the worker pool and the stores."""

    settings: Settings
    place_repository: PlaceRepository
    task_queue: TaskQueue
    checkpoints: CheckpointStore
    pipeline: ChunkPipeline
    cycle: IngestionCycle
    controller: ContinuousController
    worker_pool: WorkerPool | None
    executor: TaskExecutor
    search_client: SearchClient
    enrichment_client: EnrichmentClient
    _closed: bool = field(default=False, repr=False)

    def start(self) -> None:
        if self.worker_pool is not None:
            self.worker_pool.start()
        self.controller.start()

    def stop(self) -> None:
        self.controller.stop()
        if self.worker_pool is not None and self.worker_pool.running:
            self.worker_pool.stop()

    def status(self) -> ServiceStatus:
        return self.controller.status()

    def enqueue(
        self,
        target_id: str,
        flags: WorkFlags,
        priority: int = PRIORITY_NORMAL,
    ) -> TaskView:
        return self.task_queue.enqueue(target_id, flags, priority)

    def queue_stats(self) -> QueueStats:
        return self.task_queue.stats()

    def close(self) -> None:
        if self._closed:
            return
        self.stop()
        clients: list[object] = [self.search_client]
        if self.enrichment_client is not self.search_client:
            clients.append(self.enrichment_client)
        for client in clients:
            if isinstance(client, ClosableClient):
                client.close()
        self.task_queue.close()
        self.place_repository.close()
        self._closed = True


def build_application(
    settings: Settings,
    *,
    search_client: SearchClient | None = None,
    enrichment_client: EnrichmentClient | None = None,
    init_schema: bool = True,
) -> Application:
    """Assemble repositories, collaborators, pipeline, workers and controller."""

    batch = settings.batch
    queue_settings = settings.queue
    source = settings.source

    place_repository = PlaceRepository(settings.db_path)
    task_queue = TaskQueue(
        settings.db_path,
        max_attempts=queue_settings.max_retry_attempts,
        base_delay_seconds=queue_settings.base_delay_seconds,
        backoff_multiplier=queue_settings.backoff_multiplier,
    )
    if init_schema:
        place_repository.init_schema()

    if search_client is None:
        search_client = HttpSearchClient(
            search_url=source.search_url,
            page_size=source.page_size,
            timeout_seconds=source.request_timeout_seconds,
            api_key=source.api_key,
        )
    if enrichment_client is None:
        enrichment_client = HttpEnrichmentClient(
            enrich_url=source.enrich_url,
            timeout_seconds=source.request_timeout_seconds,
            api_key=source.api_key,
        )

    checkpoints = CheckpointStore(place_repository)
    pipeline = ChunkPipeline(
        job_name=batch.job_name,
        search_client=search_client,
        enrichment_client=enrichment_client,
        repository=place_repository,
        checkpoints=checkpoints,
        regions=load_regions(batch.regions_file),
        place_filter=PlaceFilter(
            excluded_keywords=source.excluded_keywords,
            excluded_categories=source.excluded_categories,
        ),
        work_flags=WorkFlags.from_names(batch.pipeline_work_flags),
        max_pages=batch.max_pages,
        skip_limit=batch.skip_limit,
        concurrency_limit=batch.concurrency_limit,
        retry_limits=RetryLimits(
            remote_service=batch.remote_retry_limit,
            socket_timeout=batch.timeout_retry_limit,
        ),
        retry_delay_seconds=batch.retry_delay_seconds,
    )

    executor = TaskExecutor(repository=place_repository, enrichment_client=enrichment_client)
    hostname = socket.gethostname()
    drain_worker = QueueWorker(
        queue=task_queue,
        executor=executor,
        worker_id=f"{queue_settings.worker_id}-drain",
        hostname=hostname,
        poll_interval_seconds=queue_settings.poll_interval_seconds,
        heartbeat_interval_seconds=queue_settings.heartbeat_interval_seconds,
    )
    cycle = IngestionCycle(
        mode=batch.cycle_mode,
        pipeline=pipeline,
        chunk_size=batch.chunk_size,
        drain_worker=drain_worker,
        drain_max_tasks=batch.drain_max_tasks,
    )
    controller_settings = settings.controller
    controller = ContinuousController(
        cycle,
        backoff=BackoffPolicy(
            base_ms=controller_settings.backoff_base_ms,
            multiplier=controller_settings.backoff_multiplier,
            cap_ms=controller_settings.backoff_cap_ms,
        ),
        stats_every_batches=controller_settings.stats_every_batches,
    )

    worker_pool = None
    if queue_settings.worker_enabled:
        worker_pool = WorkerPool(
            queue=task_queue,
            executor=executor,
            worker_id=queue_settings.worker_id,
            hostname=hostname,
            threads=queue_settings.worker_threads,
            poll_interval_seconds=queue_settings.poll_interval_seconds,
            heartbeat_interval_seconds=queue_settings.heartbeat_interval_seconds,
            stale_worker_seconds=queue_settings.stale_worker_seconds,
            stale_task_seconds=queue_settings.stale_task_seconds,
        )

    logger.debug(
        "Application built: db=%s mode=%s workers=%s",
        settings.db_path,
        batch.cycle_mode,
        queue_settings.worker_threads if worker_pool is not None else 0,
    )
    return Application(
        settings=settings,
        place_repository=place_repository,
        task_queue=task_queue,
        checkpoints=checkpoints,
        pipeline=pipeline,
        cycle=cycle,
        controller=controller,
        worker_pool=worker_pool,
        executor=executor,
        search_client=search_client,
        enrichment_client=enrichment_client,
    )
