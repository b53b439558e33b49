"""Checkpoint store keyed by job name."""

from __future__ import annotations

import copy
import logging
import threading

from place_ingest.ingestion.models import JobCheckpoint
from place_ingest.ingestion.repository import PlaceRepository

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Load/save job checkpoints; saves for one job name are serialized."""

    def __init__(self, repository: PlaceRepository) -> None:
        self.repository = repository
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def load(self, job_name: str) -> JobCheckpoint | None:
        return self.repository.load_checkpoint(job_name)

    def save(self, job_name: str, state: JobCheckpoint) -> JobCheckpoint:
        """Upsert the checkpoint; the stored page never regresses."""

        if state.job_name != job_name:
            state = copy.copy(state)
            state.job_name = job_name
        with self._lock_for(job_name):
            stored = self.repository.save_checkpoint(state)
        logger.debug(
            "Checkpoint saved for %s: page=%d total=%d status=%s",
            job_name,
            stored.last_processed_page,
            stored.total_processed_records,
            stored.last_execution_status.value if stored.last_execution_status else None,
        )
        return stored

    def _lock_for(self, job_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_name)
            if lock is None:
                lock = threading.Lock()
                self._locks[job_name] = lock
            return lock
