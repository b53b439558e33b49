"""Persistent update-task queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, delete, select

from place_ingest.ingestion.models import WorkFlags
from place_ingest.queue.models import (
    CLAIMABLE_STATUSES,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    FailOutcome,
    ProgressStatus,
    QueueStats,
    TaskDetails,
    TaskEventView,
    TaskProgressView,
    TaskStatus,
    TaskView,
    WorkerInfoView,
    WorkerStatus,
    truncate_error,
)
from place_ingest.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from place_ingest.storage.sqlmodel_models import (
    QueueWorker,
    UpdateTask,
    UpdateTaskEvent,
    UpdateTaskProgress,
)

logger = logging.getLogger(__name__)

_RUNNING_WORKER_STATUSES = (WorkerStatus.ACTIVE.value, WorkerStatus.IDLE.value)


class TaskQueue:
    """Queue persistence facade: enqueue, atomic claim, completion and retry policy."""

    def __init__(
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 30.0,
        backoff_multiplier: float = 2.0,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be a positive integer.")
        self.db_path = db_path
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.backoff_multiplier = backoff_multiplier
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def retry_delay(self, attempts: int) -> timedelta:
        """Delay before the next attempt after `attempts` failed attempts."""

        return timedelta(seconds=self.base_delay_seconds * (self.backoff_multiplier**attempts))

    def enqueue(
        self,
        target_id: str,
        flags: WorkFlags,
        priority: int = PRIORITY_NORMAL,
        *,
        max_attempts: int | None = None,
        task_id: str | None = None,
    ) -> TaskView:
        """Create a pending task eligible for claiming immediately."""

        with Session(self.engine) as session:
            row = self._add_task(
                session,
                target_id=target_id,
                flags=flags,
                priority=priority,
                max_attempts=max_attempts,
                task_id=task_id,
                now=utc_now(),
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def enqueue_many(
        self,
        target_ids: Iterable[str],
        flags: WorkFlags,
        priority: int = PRIORITY_NORMAL,
    ) -> list[TaskView]:
        now = utc_now()
        with Session(self.engine) as session:
            rows = [
                self._add_task(
                    session,
                    target_id=target_id,
                    flags=flags,
                    priority=priority,
                    max_attempts=None,
                    task_id=None,
                    now=now,
                )
                for target_id in target_ids
            ]
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_task_view(row) for row in rows]

    def claim_next(self, worker_id: str) -> TaskView | None:
        """Atomically claim the best eligible task, or return None."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(UpdateTask)
                    .where(
                        col(UpdateTask.status).in_([status.value for status in CLAIMABLE_STATUSES]),
                        UpdateTask.scheduled_at <= to_db_datetime(now),
                    )
                    .order_by(
                        col(UpdateTask.priority).desc(),
                        col(UpdateTask.scheduled_at).asc(),
                        col(UpdateTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                previous = TaskStatus(candidate.status)
                result = session.exec(
                    sa_update(UpdateTask)
                    .where(
                        col(UpdateTask.task_id) == candidate.task_id,
                        col(UpdateTask.status) == previous.value,
                        col(UpdateTask.attempts) == candidate.attempts,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        worker_id=worker_id,
                        started_at=to_db_datetime(now),
                        finished_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(UpdateTask).where(UpdateTask.task_id == candidate.task_id),
                ).one()
                session.refresh(claimed)
                self._record_progress(
                    session,
                    task=claimed,
                    attempt=claimed.attempts + 1,
                    status=ProgressStatus.PROCESSING,
                    worker_id=worker_id,
                    start_time=now,
                    end_time=None,
                    last_error=None,
                )
                self._add_event(
                    session=session,
                    task_id=claimed.task_id,
                    event_type="claimed",
                    status_from=previous,
                    status_to=TaskStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempt": claimed.attempts + 1},
                )
                session.commit()
                return _to_task_view(claimed)

    def complete(self, task_id: str) -> bool:
        """Mark a processing task as completed."""

        return self._finish(task_id, progress_status=ProgressStatus.COMPLETED, reason=None)

    def complete_not_found(self, task_id: str, reason: str | None = None) -> bool:
        """Complete a task whose target no longer exists."""

        return self._finish(task_id, progress_status=ProgressStatus.NOT_FOUND, reason=reason)

    def fail(self, task_id: str, error: str) -> FailOutcome | None:
        """Record a failed attempt; schedule a retry or move the task to `failed`."""

        return self._fail(task_id, error=error, event_type=None)

    def recover_stale_processing(self, stale_after: timedelta) -> int:
        """Treat tasks stuck in `processing` longer than `stale_after` as failed attempts."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(UpdateTask.task_id).where(
                    UpdateTask.status == TaskStatus.PROCESSING.value,
                    col(UpdateTask.started_at) < cutoff,
                ),
            ).all()
        recovered = 0
        for task_id in stale_ids:
            outcome = self._fail(
                task_id,
                error=f"Processing exceeded {int(stale_after.total_seconds())}s without completion",
                event_type="stale_recovered",
            )
            if outcome is not None:
                recovered += 1
        if recovered:
            logger.warning("Recovered %d stale processing task(s)", recovered)
        return recovered

    def retry_failed(self, flags: WorkFlags | None = None) -> list[TaskView]:
        """Enqueue fresh tasks for dead-lettered targets; failed tasks stay terminal."""

        now = utc_now()
        created: list[TaskView] = []
        with Session(self.engine) as session:
            requeued_ids = select(UpdateTaskEvent.task_id).where(
                UpdateTaskEvent.event_type == "requeued",
            )
            failed_rows = session.exec(
                select(UpdateTask)
                .where(
                    UpdateTask.status == TaskStatus.FAILED.value,
                    col(UpdateTask.task_id).not_in(requeued_ids),
                )
                .order_by(col(UpdateTask.finished_at).asc()),
            ).all()
            active_targets = set(
                session.exec(
                    select(UpdateTask.target_id).where(
                        col(UpdateTask.status).in_(
                            [
                                TaskStatus.PENDING.value,
                                TaskStatus.RETRYING.value,
                                TaskStatus.PROCESSING.value,
                            ],
                        ),
                    ),
                ).all(),
            )
            new_rows: list[UpdateTask] = []
            for failed in failed_rows:
                if failed.target_id not in active_targets:
                    new_row = self._add_task(
                        session,
                        target_id=failed.target_id,
                        flags=flags or _row_flags(failed),
                        priority=failed.priority,
                        max_attempts=failed.max_attempts,
                        task_id=None,
                        now=now,
                    )
                    active_targets.add(failed.target_id)
                    new_rows.append(new_row)
                    details: dict[str, object] = {"new_task_id": new_row.task_id}
                else:
                    details = {"skipped": "target already queued"}
                self._add_event(
                    session=session,
                    task_id=failed.task_id,
                    event_type="requeued",
                    status_from=TaskStatus.FAILED,
                    status_to=TaskStatus.FAILED,
                    details=details,
                )
            session.commit()
            for row in new_rows:
                session.refresh(row)
                created.append(_to_task_view(row))
        if created:
            logger.info("Re-enqueued %d failed target(s)", len(created))
        return created

    def purge_completed(self, older_than: timedelta) -> int:
        """Delete completed tasks finished before `now - older_than`."""

        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                delete(UpdateTask).where(
                    col(UpdateTask.status) == TaskStatus.COMPLETED.value,
                    col(UpdateTask.finished_at) < cutoff,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(UpdateTask, task_id)
            return _to_task_view(row) if row is not None else None

    def get_progress(self, task_id: str) -> list[TaskProgressView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UpdateTaskProgress)
                .where(UpdateTaskProgress.task_id == task_id)
                .order_by(col(UpdateTaskProgress.attempt).asc()),
            ).all()
        return [_to_progress_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        with Session(self.engine) as session:
            task = session.get(UpdateTask, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(UpdateTaskEvent)
                .where(UpdateTaskEvent.task_id == task_id)
                .order_by(col(UpdateTaskEvent.id).asc()),
            ).all()
            task_view = _to_task_view(task)
        return TaskDetails(
            task=task_view,
            progress=self.get_progress(task_id),
            events=[_to_event_view(row) for row in event_rows],
        )

    def stats(self, *, hostname: str | None = None) -> QueueStats:
        with Session(self.engine) as session:
            status_counts = dict(
                session.exec(
                    select(UpdateTask.status, func.count()).group_by(UpdateTask.status),
                ).all(),
            )
            priority_count = session.exec(
                select(func.count())
                .select_from(UpdateTask)
                .where(
                    col(UpdateTask.status).in_([status.value for status in CLAIMABLE_STATUSES]),
                    col(UpdateTask.priority) >= PRIORITY_HIGH,
                ),
            ).one()
        workers = self.list_workers(hostname=hostname)
        return QueueStats(
            pending_count=int(status_counts.get(TaskStatus.PENDING.value, 0)),
            priority_count=int(priority_count),
            processing_count=int(status_counts.get(TaskStatus.PROCESSING.value, 0)),
            completed_count=int(status_counts.get(TaskStatus.COMPLETED.value, 0)),
            failed_count=int(status_counts.get(TaskStatus.FAILED.value, 0)),
            retrying_count=int(status_counts.get(TaskStatus.RETRYING.value, 0)),
            active_workers=sum(
                1 for worker in workers if worker.status.value in _RUNNING_WORKER_STATUSES
            ),
            total_workers=len(workers),
            last_updated=utc_now(),
            workers=workers,
        )

    def register_worker(
        self,
        worker_id: str,
        *,
        hostname: str,
        threads: int,
        enabled: bool = True,
    ) -> WorkerInfoView:
        now = to_db_datetime(utc_now())
        statement = sqlite_insert(QueueWorker).values(
            worker_id=worker_id,
            hostname=hostname,
            threads=threads,
            enabled=enabled,
            status=WorkerStatus.STARTING.value,
            started_at=now,
            last_heartbeat=now,
            tasks_processed=0,
            tasks_failed=0,
            current_task_id=None,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["worker_id"],
            set_={
                "hostname": statement.excluded.hostname,
                "threads": statement.excluded.threads,
                "enabled": statement.excluded.enabled,
                "status": statement.excluded.status,
                "started_at": statement.excluded.started_at,
                "last_heartbeat": statement.excluded.last_heartbeat,
                "tasks_processed": 0,
                "tasks_failed": 0,
                "current_task_id": None,
            },
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
            row = session.get(QueueWorker, worker_id)
            if row is None:
                raise RuntimeError(f"Worker row not found after registration: {worker_id}")
            return _to_worker_view(row)

    def update_worker(
        self,
        worker_id: str,
        *,
        status: WorkerStatus | None = None,
        current_task_id: str | None = None,
        clear_current_task: bool = False,
        processed_delta: int = 0,
        failed_delta: int = 0,
    ) -> bool:
        """Heartbeat the worker row and apply optional state changes."""

        values: dict[str, object] = {"last_heartbeat": to_db_datetime(utc_now())}
        if status is not None:
            values["status"] = status.value
        if current_task_id is not None:
            values["current_task_id"] = current_task_id
        elif clear_current_task:
            values["current_task_id"] = None
        if processed_delta:
            values["tasks_processed"] = col(QueueWorker.tasks_processed) + processed_delta
        if failed_delta:
            values["tasks_failed"] = col(QueueWorker.tasks_failed) + failed_delta
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueWorker)
                .where(col(QueueWorker.worker_id) == worker_id)
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def unregister_worker(self, worker_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                delete(QueueWorker).where(col(QueueWorker.worker_id) == worker_id),
            )
            session.commit()
            return result.rowcount == 1

    def get_worker(self, worker_id: str) -> WorkerInfoView | None:
        with Session(self.engine) as session:
            row = session.get(QueueWorker, worker_id)
            return _to_worker_view(row) if row is not None else None

    def list_workers(self, *, hostname: str | None = None) -> list[WorkerInfoView]:
        with Session(self.engine) as session:
            statement = select(QueueWorker).order_by(col(QueueWorker.worker_id).asc())
            if hostname is not None:
                statement = statement.where(QueueWorker.hostname == hostname)
            rows = session.exec(statement).all()
        return [_to_worker_view(row) for row in rows]

    def cleanup_stale_workers(self, stale_after: timedelta) -> list[str]:
        """Delete worker rows without a heartbeat for `stale_after`."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            stale_ids = list(
                session.exec(
                    select(QueueWorker.worker_id).where(col(QueueWorker.last_heartbeat) < cutoff),
                ).all(),
            )
            if stale_ids:
                session.exec(
                    delete(QueueWorker).where(col(QueueWorker.worker_id).in_(stale_ids)),
                )
                session.commit()
        if stale_ids:
            logger.warning("Removed %d stale worker(s): %s", len(stale_ids), ", ".join(stale_ids))
        return stale_ids

    def _add_task(  # noqa: PLR0913
        self,
        session: Session,
        *,
        target_id: str,
        flags: WorkFlags,
        priority: int,
        max_attempts: int | None,
        task_id: str | None,
        now: datetime,
    ) -> UpdateTask:
        if priority not in (PRIORITY_NORMAL, PRIORITY_HIGH):
            raise ValueError(f"Unsupported priority: {priority}")
        if not target_id:
            raise ValueError("target_id must be non-empty.")
        row = UpdateTask(
            task_id=task_id or str(uuid4()),
            target_id=target_id,
            update_menus=flags.menus,
            update_images=flags.images,
            update_reviews=flags.reviews,
            priority=priority,
            status=TaskStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self.max_attempts,
            created_at=to_db_datetime(now),
            scheduled_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={"target_id": target_id, "priority": priority},
        )
        return row

    def _finish(
        self,
        task_id: str,
        *,
        progress_status: ProgressStatus,
        reason: str | None,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(UpdateTask)
                .where(
                    col(UpdateTask.task_id) == task_id,
                    col(UpdateTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    finished_at=to_db_datetime(now),
                    last_error=truncate_error(reason),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = session.exec(select(UpdateTask).where(UpdateTask.task_id == task_id)).one()
            session.refresh(row)
            self._record_progress(
                session,
                task=row,
                attempt=row.attempts + 1,
                status=progress_status,
                worker_id=row.worker_id,
                start_time=to_utc_aware_datetime(row.started_at or now),
                end_time=now,
                last_error=reason,
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=progress_status.value,
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details={"reason": reason} if reason else {},
            )
            session.commit()
            return True

    def _fail(self, task_id: str, *, error: str, event_type: str | None) -> FailOutcome | None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(UpdateTask).where(
                    UpdateTask.task_id == task_id,
                    UpdateTask.status == TaskStatus.PROCESSING.value,
                ),
            ).one_or_none()
            if row is None:
                return None

            previous_attempts = row.attempts
            worker_id = row.worker_id
            started_at = row.started_at
            attempts = previous_attempts + 1
            if attempts < row.max_attempts:
                status = TaskStatus.RETRYING
                scheduled_at: datetime | None = now + self.retry_delay(attempts)
            else:
                status = TaskStatus.FAILED
                scheduled_at = None
            values: dict[str, object] = {
                "status": status.value,
                "attempts": attempts,
                "last_error": truncate_error(error),
                "worker_id": None if status == TaskStatus.RETRYING else worker_id,
                "updated_at": to_db_datetime(now),
                "finished_at": to_db_datetime(now) if status == TaskStatus.FAILED else None,
            }
            if scheduled_at is not None:
                values["scheduled_at"] = to_db_datetime(scheduled_at)

            result = session.exec(
                sa_update(UpdateTask)
                .where(
                    col(UpdateTask.task_id) == task_id,
                    col(UpdateTask.status) == TaskStatus.PROCESSING.value,
                    col(UpdateTask.attempts) == previous_attempts,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            self._record_progress(
                session,
                task=row,
                attempt=attempts,
                status=(
                    ProgressStatus.RETRYING
                    if status == TaskStatus.RETRYING
                    else ProgressStatus.FAILED
                ),
                worker_id=worker_id,
                start_time=to_utc_aware_datetime(started_at or now),
                end_time=now,
                last_error=error,
            )
            details: dict[str, object] = {"attempts": attempts, "max_attempts": row.max_attempts}
            if scheduled_at is not None:
                details["scheduled_at"] = scheduled_at.isoformat()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type
                or ("retry_scheduled" if status == TaskStatus.RETRYING else "failed"),
                status_from=TaskStatus.PROCESSING,
                status_to=status,
                details=details,
            )
            session.commit()

        if status == TaskStatus.FAILED:
            logger.warning("Task %s failed permanently after %d attempt(s)", task_id, attempts)
        return FailOutcome(status=status, attempts=attempts, scheduled_at=scheduled_at)

    def _record_progress(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task: UpdateTask,
        attempt: int,
        status: ProgressStatus,
        worker_id: str | None,
        start_time: datetime,
        end_time: datetime | None,
        last_error: str | None,
    ) -> None:
        statement = sqlite_insert(UpdateTaskProgress).values(
            task_id=task.task_id,
            attempt=attempt,
            target_id=task.target_id,
            status=status.value,
            worker_id=worker_id,
            update_menus=task.update_menus,
            update_images=task.update_images,
            update_reviews=task.update_reviews,
            start_time=to_db_datetime(start_time),
            end_time=to_db_datetime(end_time) if end_time is not None else None,
            last_error=truncate_error(last_error),
        )
        statement = statement.on_conflict_do_update(
            index_elements=["task_id", "attempt"],
            set_={
                "status": statement.excluded.status,
                "worker_id": statement.excluded.worker_id,
                "end_time": statement.excluded.end_time,
                "last_error": statement.excluded.last_error,
            },
        )
        session.exec(statement)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            UpdateTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _row_flags(row: UpdateTask) -> WorkFlags:
    return WorkFlags(menus=row.update_menus, images=row.update_images, reviews=row.update_reviews)


def _to_task_view(row: UpdateTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        target_id=row.target_id,
        flags=_row_flags(row),
        priority=row.priority,
        status=TaskStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        created_at=to_utc_aware_datetime(row.created_at),
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        worker_id=row.worker_id,
        last_error=row.last_error,
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_progress_view(row: UpdateTaskProgress) -> TaskProgressView:
    return TaskProgressView(
        task_id=row.task_id,
        attempt=row.attempt,
        target_id=row.target_id,
        status=ProgressStatus(row.status),
        worker_id=row.worker_id,
        flags=WorkFlags(
            menus=row.update_menus,
            images=row.update_images,
            reviews=row.update_reviews,
        ),
        start_time=to_utc_aware_datetime(row.start_time),
        end_time=optional_utc(row.end_time),
        last_error=row.last_error,
    )


def _to_event_view(row: UpdateTaskEvent) -> TaskEventView:
    details: dict[str, object] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )


def _to_worker_view(row: QueueWorker) -> WorkerInfoView:
    return WorkerInfoView(
        worker_id=row.worker_id,
        hostname=row.hostname,
        threads=row.threads,
        enabled=row.enabled,
        status=WorkerStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        last_heartbeat=to_utc_aware_datetime(row.last_heartbeat),
        tasks_processed=row.tasks_processed,
        tasks_failed=row.tasks_failed,
        current_task_id=row.current_task_id,
    )
