"""Runtime configuration for place ingestion, the update queue and the controller."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

CYCLE_MODES = ("pipeline", "queue", "both")
WORK_FLAG_NAMES = ("menus", "images", "reviews")

DEFAULT_EXCLUDED_KEYWORDS: tuple[str, ...] = (
    # adult entertainment
    "클럽",
    "나이트",
    "룸살롱",
    "유흥",
    "성인",
    "노래방",
    "단란주점",
    "호스트바",
    "club",
    "night",
    # large retail and chains
    "마트",
    "편의점",
    "대형마트",
    "하이퍼마켓",
    "CU",
    "GS25",
    "세븐일레븐",
    "이마트",
    "롯데마트",
    "홈플러스",
    "코스트코",
    "mart",
    "convenience",
)
DEFAULT_EXCLUDED_CATEGORIES: tuple[str, ...] = (
    "convenience_store",
    "supermarket",
    "department_store",
    "shopping_mall",
    "night_club",
    "bar",
    "casino",
    "spa",
    "massage",
    "gas_station",
    "parking",
    "atm",
    "bank",
    "hospital",
    "pharmacy",
)


@dataclass(slots=True)
class BatchSettings:
    """Chunked place-ingestion job settings."""

    job_name: str = "place-ingestion"
    chunk_size: int = 10
    skip_limit: int = 50
    max_pages: int = 5
    concurrency_limit: int = 4
    remote_retry_limit: int = 3
    timeout_retry_limit: int = 2
    retry_delay_seconds: float = 0.5
    pipeline_work_flags: tuple[str, ...] = WORK_FLAG_NAMES
    regions_file: Path | None = None
    cycle_mode: str = "both"
    drain_max_tasks: int = 20


@dataclass(slots=True)
class QueueSettings:
    """Update queue and worker pool settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    worker_threads: int = 2
    worker_enabled: bool = True
    max_retry_attempts: int = 3
    base_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 10.0
    stale_worker_seconds: int = 120
    stale_task_seconds: int = 1_800


@dataclass(slots=True)
class ControllerSettings:
    """Continuous controller backoff settings."""

    backoff_base_ms: int = 1_000
    backoff_multiplier: float = 2.0
    backoff_cap_ms: int = 300_000
    stats_every_batches: int = 5


@dataclass(slots=True)
class SourceSettings:
    """External search / enrichment service settings."""

    search_url: str = "http://localhost:8000/api/places/search"
    enrich_url: str = "http://localhost:8000/api/places/enrich"
    api_key: str | None = None
    request_timeout_seconds: float = 30.0
    page_size: int = 20
    excluded_keywords: tuple[str, ...] = DEFAULT_EXCLUDED_KEYWORDS
    excluded_categories: tuple[str, ...] = DEFAULT_EXCLUDED_CATEGORIES


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".place_ingest.db")
    batch: BatchSettings = field(default_factory=BatchSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    source: SourceSettings = field(default_factory=SourceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        regions_file = os.getenv("PLACE_INGEST_REGIONS_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("PLACE_INGEST_DB_PATH", ".place_ingest.db")),
            batch=BatchSettings(
                job_name=os.getenv("PLACE_INGEST_JOB_NAME", "place-ingestion"),
                chunk_size=int(os.getenv("PLACE_INGEST_CHUNK_SIZE", "10")),
                skip_limit=int(os.getenv("PLACE_INGEST_SKIP_LIMIT", "50")),
                max_pages=int(os.getenv("PLACE_INGEST_MAX_PAGES", "5")),
                concurrency_limit=int(os.getenv("PLACE_INGEST_CONCURRENCY_LIMIT", "4")),
                remote_retry_limit=int(os.getenv("PLACE_INGEST_REMOTE_RETRY_LIMIT", "3")),
                timeout_retry_limit=int(os.getenv("PLACE_INGEST_TIMEOUT_RETRY_LIMIT", "2")),
                retry_delay_seconds=float(os.getenv("PLACE_INGEST_RETRY_DELAY_SECONDS", "0.5")),
                pipeline_work_flags=_env_csv(
                    "PLACE_INGEST_PIPELINE_WORK_FLAGS",
                    default=WORK_FLAG_NAMES,
                ),
                regions_file=Path(regions_file) if regions_file else None,
                cycle_mode=os.getenv("PLACE_INGEST_CYCLE_MODE", "both").strip().lower(),
                drain_max_tasks=int(os.getenv("PLACE_INGEST_DRAIN_MAX_TASKS", "20")),
            ),
            queue=QueueSettings(
                worker_id=os.getenv(
                    "PLACE_INGEST_WORKER_ID",
                    f"{socket.gethostname()}-{os.getpid()}",
                ),
                worker_threads=int(os.getenv("PLACE_INGEST_WORKER_THREADS", "2")),
                worker_enabled=_env_bool("PLACE_INGEST_WORKER_ENABLED", default=True),
                max_retry_attempts=int(os.getenv("PLACE_INGEST_MAX_RETRY_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("PLACE_INGEST_RETRY_BASE_DELAY_SECONDS", "30")),
                backoff_multiplier=float(
                    os.getenv("PLACE_INGEST_RETRY_BACKOFF_MULTIPLIER", "2"),
                ),
                poll_interval_seconds=float(
                    os.getenv("PLACE_INGEST_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("PLACE_INGEST_WORKER_HEARTBEAT_SECONDS", "10"),
                ),
                stale_worker_seconds=int(os.getenv("PLACE_INGEST_STALE_WORKER_SECONDS", "120")),
                stale_task_seconds=int(os.getenv("PLACE_INGEST_STALE_TASK_SECONDS", "1800")),
            ),
            controller=ControllerSettings(
                backoff_base_ms=int(os.getenv("PLACE_INGEST_BACKOFF_BASE_MS", "1000")),
                backoff_multiplier=float(os.getenv("PLACE_INGEST_BACKOFF_MULTIPLIER", "2.0")),
                backoff_cap_ms=int(os.getenv("PLACE_INGEST_BACKOFF_CAP_MS", "300000")),
                stats_every_batches=int(os.getenv("PLACE_INGEST_STATS_EVERY_BATCHES", "5")),
            ),
            source=SourceSettings(
                search_url=os.getenv(
                    "PLACE_INGEST_SEARCH_URL",
                    "http://localhost:8000/api/places/search",
                ),
                enrich_url=os.getenv(
                    "PLACE_INGEST_ENRICH_URL",
                    "http://localhost:8000/api/places/enrich",
                ),
                api_key=os.getenv("PLACE_INGEST_API_KEY") or None,
                request_timeout_seconds=float(
                    os.getenv("PLACE_INGEST_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                page_size=int(os.getenv("PLACE_INGEST_PAGE_SIZE", "20")),
                excluded_keywords=_env_csv(
                    "PLACE_INGEST_EXCLUDED_KEYWORDS",
                    default=DEFAULT_EXCLUDED_KEYWORDS,
                ),
                excluded_categories=_env_csv(
                    "PLACE_INGEST_EXCLUDED_CATEGORIES",
                    default=DEFAULT_EXCLUDED_CATEGORIES,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        batch = self.batch
        if batch.chunk_size <= 0:
            raise ValueError("PLACE_INGEST_CHUNK_SIZE must be a positive integer.")
        if batch.skip_limit < 0:
            raise ValueError("PLACE_INGEST_SKIP_LIMIT must be >= 0.")
        if batch.max_pages <= 0:
            raise ValueError("PLACE_INGEST_MAX_PAGES must be a positive integer.")
        if batch.concurrency_limit <= 0:
            raise ValueError("PLACE_INGEST_CONCURRENCY_LIMIT must be a positive integer.")
        if batch.remote_retry_limit < 0 or batch.timeout_retry_limit < 0:
            raise ValueError("Retry limits must be >= 0.")
        if batch.cycle_mode not in CYCLE_MODES:
            raise ValueError(
                f"Invalid PLACE_INGEST_CYCLE_MODE: {batch.cycle_mode!r}. "
                f"Expected one of {', '.join(CYCLE_MODES)}.",
            )
        unknown_flags = sorted(set(batch.pipeline_work_flags) - set(WORK_FLAG_NAMES))
        if unknown_flags:
            raise ValueError(f"Unknown work flags: {', '.join(unknown_flags)}")

        queue = self.queue
        if queue.worker_threads <= 0:
            raise ValueError("PLACE_INGEST_WORKER_THREADS must be a positive integer.")
        if queue.max_retry_attempts <= 0:
            raise ValueError("PLACE_INGEST_MAX_RETRY_ATTEMPTS must be a positive integer.")
        if queue.base_delay_seconds < 0 or queue.backoff_multiplier < 1:
            raise ValueError("Retry delay must be >= 0 and multiplier must be >= 1.")

        controller = self.controller
        if controller.backoff_base_ms <= 0:
            raise ValueError("PLACE_INGEST_BACKOFF_BASE_MS must be a positive integer.")
        if controller.backoff_multiplier < 1:
            raise ValueError("PLACE_INGEST_BACKOFF_MULTIPLIER must be >= 1.")
        if controller.backoff_cap_ms < controller.backoff_base_ms:
            raise ValueError("PLACE_INGEST_BACKOFF_CAP_MS must be >= PLACE_INGEST_BACKOFF_BASE_MS.")

        for name, url in (
            ("PLACE_INGEST_SEARCH_URL", self.source.search_url),
            ("PLACE_INGEST_ENRICH_URL", self.source.enrich_url),
        ):
            parsed = urlparse(url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    f"Invalid {name}: {url!r}. Expected an absolute http:// or https:// URL.",
                )
        if self.source.page_size <= 0:
            raise ValueError("PLACE_INGEST_PAGE_SIZE must be a positive integer.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
