"""Domain models for the update task queue and its workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from place_ingest.ingestion.models import WorkFlags

LAST_ERROR_MAX_CHARS = 500
PRIORITY_NORMAL = 0
PRIORITY_HIGH = 1


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


CLAIMABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.RETRYING)


class ProgressStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    RETRYING = "retrying"
    FAILED = "failed"


class WorkerStatus(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    IDLE = "idle"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(slots=True)
class TaskView:
    task_id: str
    target_id: str
    flags: WorkFlags
    priority: int
    status: TaskStatus
    attempts: int
    max_attempts: int
    created_at: datetime
    scheduled_at: datetime
    updated_at: datetime
    worker_id: str | None = None
    last_error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(slots=True)
class TaskEventView:
    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskProgressView:
    """Per-attempt execution record of one task."""

    task_id: str
    attempt: int
    target_id: str
    status: ProgressStatus
    worker_id: str | None
    flags: WorkFlags
    start_time: datetime
    end_time: datetime | None = None
    last_error: str | None = None


@dataclass(slots=True)
class TaskDetails:
    task: TaskView
    progress: list[TaskProgressView]
    events: list[TaskEventView]


@dataclass(slots=True)
class WorkerInfoView:
    worker_id: str
    hostname: str
    threads: int
    enabled: bool
    status: WorkerStatus
    started_at: datetime
    last_heartbeat: datetime
    tasks_processed: int = 0
    tasks_failed: int = 0
    current_task_id: str | None = None


@dataclass(slots=True)
class QueueStats:
    pending_count: int
    priority_count: int
    processing_count: int
    completed_count: int
    failed_count: int
    retrying_count: int
    active_workers: int
    total_workers: int
    last_updated: datetime
    workers: list[WorkerInfoView] = field(default_factory=list)


@dataclass(slots=True)
class FailOutcome:
    """Result of `TaskQueue.fail`."""

    status: TaskStatus
    attempts: int
    scheduled_at: datetime | None = None


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    if len(message) <= LAST_ERROR_MAX_CHARS:
        return message
    return message[: LAST_ERROR_MAX_CHARS - 3] + "..."
