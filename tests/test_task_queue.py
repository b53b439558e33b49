import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session

from place_ingest.ingestion.models import WorkFlags
from place_ingest.queue.models import (
    LAST_ERROR_MAX_CHARS,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    ProgressStatus,
    TaskStatus,
    WorkerStatus,
)
from place_ingest.queue.repository import TaskQueue
from place_ingest.storage.common import to_db_datetime, utc_now
from place_ingest.storage.sqlmodel_models import QueueWorker, UpdateTask

pytestmark = [
    allure.epic("Update Queue"),
    allure.feature("Task Queue Reliability"),
]

MENUS = WorkFlags(menus=True)


def _backdate_task(queue: TaskQueue, task_id: str, *, started_ago: timedelta) -> None:
    with Session(queue.engine) as session:
        session.exec(
            sa_update(UpdateTask)
            .where(UpdateTask.task_id == task_id)
            .values(started_at=to_db_datetime(utc_now() - started_ago)),
        )
        session.commit()


def test_enqueue_creates_pending_task_with_event(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", WorkFlags(menus=True, reviews=True))

    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0
    assert task.max_attempts == 3
    assert task.flags == WorkFlags(menus=True, reviews=True)
    details = task_queue.get_task_details(task.task_id)
    assert [event.event_type for event in details.events] == ["enqueued"]


def test_enqueue_rejects_unknown_priority(task_queue: TaskQueue) -> None:
    with pytest.raises(ValueError, match="priority"):
        task_queue.enqueue("place-1", MENUS, priority=7)


def test_enqueue_many_creates_tasks_in_one_transaction(task_queue: TaskQueue) -> None:
    tasks = task_queue.enqueue_many(["place-a", "place-b", "place-c"], MENUS, PRIORITY_HIGH)

    assert [task.target_id for task in tasks] == ["place-a", "place-b", "place-c"]
    assert len({task.task_id for task in tasks}) == 3
    assert {task.status for task in tasks} == {TaskStatus.PENDING}
    assert {task.priority for task in tasks} == {PRIORITY_HIGH}
    assert len({task.scheduled_at for task in tasks}) == 1
    assert task_queue.stats().pending_count == 3

    def _targets():
        yield "place-d"
        yield "place-e"
        raise RuntimeError("target listing failed")

    with pytest.raises(RuntimeError, match="target listing failed"):
        task_queue.enqueue_many(_targets(), MENUS)

    assert task_queue.stats().pending_count == 3


def test_high_priority_task_is_claimed_first(task_queue: TaskQueue) -> None:
    normal = task_queue.enqueue("place-normal", MENUS, PRIORITY_NORMAL)
    high = task_queue.enqueue("place-high", MENUS, PRIORITY_HIGH)

    first = task_queue.claim_next("worker-a")
    second = task_queue.claim_next("worker-a")

    assert first is not None
    assert first.task_id == high.task_id
    assert first.status == TaskStatus.PROCESSING
    assert first.worker_id == "worker-a"
    assert second is not None
    assert second.task_id == normal.task_id
    assert task_queue.claim_next("worker-a") is None


def test_same_priority_tasks_are_claimed_in_fifo_order(task_queue: TaskQueue) -> None:
    tasks = [task_queue.enqueue(target_id, MENUS) for target_id in ("a", "b", "c")]

    claimed = [task_queue.claim_next("worker").task_id for _ in tasks]

    assert claimed == [task.task_id for task in tasks]


def test_complete_records_progress_and_event(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    task_queue.claim_next("worker-a")

    assert task_queue.complete(task.task_id) is True
    assert task_queue.complete(task.task_id) is False

    details = task_queue.get_task_details(task.task_id)
    assert details.task.status == TaskStatus.COMPLETED
    assert details.task.finished_at is not None
    assert [(item.attempt, item.status) for item in details.progress] == [
        (1, ProgressStatus.COMPLETED),
    ]
    assert details.progress[0].end_time is not None
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "completed"]


def test_complete_not_found_keeps_reason(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    task_queue.claim_next("worker-a")

    assert task_queue.complete_not_found(task.task_id, reason="place closed") is True

    details = task_queue.get_task_details(task.task_id)
    assert details.task.status == TaskStatus.COMPLETED
    assert details.task.last_error == "place closed"
    assert details.progress[-1].status == ProgressStatus.NOT_FOUND


def test_task_failing_max_attempts_times_is_failed_and_never_claimed(
    task_queue: TaskQueue,
) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    outcomes = []
    for _ in range(3):
        claimed = task_queue.claim_next("worker-a")
        assert claimed is not None
        assert claimed.task_id == task.task_id
        outcomes.append(task_queue.fail(task.task_id, "upstream 503"))

    assert [(outcome.status, outcome.attempts) for outcome in outcomes] == [
        (TaskStatus.RETRYING, 1),
        (TaskStatus.RETRYING, 2),
        (TaskStatus.FAILED, 3),
    ]
    assert task_queue.claim_next("worker-a") is None
    stored = task_queue.get_task(task.task_id)
    assert stored.status == TaskStatus.FAILED
    assert stored.attempts == stored.max_attempts == 3
    # terminal: a late fail/complete does not change it
    assert task_queue.fail(task.task_id, "again") is None
    assert task_queue.complete(task.task_id) is False

    progress = task_queue.get_progress(task.task_id)
    assert [(item.attempt, item.status) for item in progress] == [
        (1, ProgressStatus.RETRYING),
        (2, ProgressStatus.RETRYING),
        (3, ProgressStatus.FAILED),
    ]


def test_retry_is_scheduled_with_exponential_delay(db_path: Path, place_repository) -> None:
    queue = TaskQueue(db_path, max_attempts=3, base_delay_seconds=30.0, backoff_multiplier=2.0)
    try:
        assert queue.retry_delay(1) == timedelta(seconds=60)
        assert queue.retry_delay(2) == timedelta(seconds=120)

        task = queue.enqueue("place-1", MENUS)
        queue.claim_next("worker-a")
        before = utc_now()
        outcome = queue.fail(task.task_id, "timeout")

        assert outcome.status == TaskStatus.RETRYING
        assert outcome.scheduled_at >= before + timedelta(seconds=59)
        # not eligible until the delay elapses
        assert queue.claim_next("worker-a") is None
        assert queue.get_task(task.task_id).worker_id is None
    finally:
        queue.close()


def test_last_error_is_truncated(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    task_queue.claim_next("worker-a")

    task_queue.fail(task.task_id, "x" * 2000)

    stored = task_queue.get_task(task.task_id)
    assert len(stored.last_error) == LAST_ERROR_MAX_CHARS
    assert stored.last_error.endswith("...")


def test_concurrent_claims_have_a_single_winner(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    barrier = threading.Barrier(6)
    results: list[str | None] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        barrier.wait()
        claimed = task_queue.claim_next(worker_id)
        with lock:
            results.append(claimed.task_id if claimed is not None else None)

    threads = [threading.Thread(target=_claim, args=(f"worker-{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(task.task_id) == 1
    assert results.count(None) == 5


def test_stale_processing_task_is_recovered_as_failed_attempt(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    fresh = task_queue.enqueue("place-2", MENUS)
    task_queue.claim_next("worker-a")
    task_queue.claim_next("worker-b")
    _backdate_task(task_queue, task.task_id, started_ago=timedelta(hours=2))

    recovered = task_queue.recover_stale_processing(timedelta(minutes=30))

    assert recovered == 1
    stored = task_queue.get_task(task.task_id)
    assert stored.status == TaskStatus.RETRYING
    assert stored.attempts == 1
    assert task_queue.get_task(fresh.task_id).status == TaskStatus.PROCESSING
    events = task_queue.get_task_details(task.task_id).events
    assert events[-1].event_type == "stale_recovered"


def test_retry_failed_creates_new_tasks_once(task_queue: TaskQueue) -> None:
    failed = task_queue.enqueue("place-1", WorkFlags(images=True), max_attempts=1)
    task_queue.claim_next("worker-a")
    task_queue.fail(failed.task_id, "boom")

    requeued = task_queue.retry_failed()

    assert len(requeued) == 1
    assert requeued[0].target_id == "place-1"
    assert requeued[0].flags == WorkFlags(images=True)
    assert requeued[0].status == TaskStatus.PENDING
    assert task_queue.get_task(failed.task_id).status == TaskStatus.FAILED
    assert task_queue.retry_failed() == []


def test_stats_counts_statuses_and_workers(task_queue: TaskQueue) -> None:
    task_queue.enqueue("place-1", MENUS, PRIORITY_HIGH)
    task_queue.enqueue("place-2", MENUS)
    task_queue.enqueue("place-3", MENUS)
    task_queue.register_worker("worker-a", hostname="host-1", threads=2)
    task_queue.update_worker("worker-a", status=WorkerStatus.ACTIVE)
    task_queue.register_worker("worker-b", hostname="host-2", threads=1)

    claimed = task_queue.claim_next("worker-a")
    task_queue.complete(claimed.task_id)

    stats = task_queue.stats()
    assert claimed.target_id == "place-1"
    assert stats.pending_count == 2
    assert stats.priority_count == 0
    assert stats.completed_count == 1
    assert stats.processing_count == 0
    assert stats.active_workers == 1
    assert stats.total_workers == 2
    assert [worker.worker_id for worker in task_queue.stats(hostname="host-2").workers] == [
        "worker-b",
    ]


def test_worker_registry_lifecycle(task_queue: TaskQueue) -> None:
    registered = task_queue.register_worker("worker-a", hostname="host-1", threads=4)
    assert registered.status == WorkerStatus.STARTING
    assert registered.threads == 4

    task_queue.update_worker(
        "worker-a",
        status=WorkerStatus.ACTIVE,
        current_task_id="task-1",
        processed_delta=1,
    )
    task_queue.update_worker("worker-a", clear_current_task=True, processed_delta=1, failed_delta=1)

    worker = task_queue.get_worker("worker-a")
    assert worker.status == WorkerStatus.ACTIVE
    assert worker.current_task_id is None
    assert (worker.tasks_processed, worker.tasks_failed) == (2, 1)

    assert task_queue.unregister_worker("worker-a") is True
    assert task_queue.get_worker("worker-a") is None


def test_cleanup_removes_workers_without_recent_heartbeat(task_queue: TaskQueue) -> None:
    task_queue.register_worker("worker-old", hostname="host", threads=1)
    task_queue.register_worker("worker-new", hostname="host", threads=1)
    with Session(task_queue.engine) as session:
        session.exec(
            sa_update(QueueWorker)
            .where(QueueWorker.worker_id == "worker-old")
            .values(last_heartbeat=to_db_datetime(utc_now() - timedelta(minutes=10))),
        )
        session.commit()

    removed = task_queue.cleanup_stale_workers(timedelta(minutes=2))

    assert removed == ["worker-old"]
    assert [worker.worker_id for worker in task_queue.list_workers()] == ["worker-new"]


def test_purge_completed_removes_old_completed_tasks(task_queue: TaskQueue) -> None:
    task = task_queue.enqueue("place-1", MENUS)
    task_queue.claim_next("worker-a")
    task_queue.complete(task.task_id)

    assert task_queue.purge_completed(timedelta(days=1)) == 0
    assert task_queue.purge_completed(timedelta(seconds=-1)) == 1
    assert task_queue.get_task(task.task_id) is None
    assert task_queue.get_progress(task.task_id) == []
