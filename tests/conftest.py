"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from place_ingest.ingestion.repository import PlaceRepository
from place_ingest.queue.repository import TaskQueue


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "place-ingest.db"


@pytest.fixture()
def place_repository(db_path: Path) -> Iterator[PlaceRepository]:
    repository = PlaceRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def task_queue(db_path: Path, place_repository: PlaceRepository) -> Iterator[TaskQueue]:
    queue = TaskQueue(db_path, max_attempts=3, base_delay_seconds=0.0, backoff_multiplier=2.0)
    try:
        yield queue
    finally:
        queue.close()
