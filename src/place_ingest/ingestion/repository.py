"""SQLModel-backed storage facade for places, enrichments and job checkpoints."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, delete, select

from place_ingest.ingestion.errors import StorageError
from place_ingest.ingestion.models import (
    ChunkWrite,
    EnrichmentPayload,
    ExecutionStatus,
    JobCheckpoint,
    PlaceRecord,
    PlaceView,
    RegionalProcessingState,
)
from place_ingest.storage.alembic_runner import upgrade_head
from place_ingest.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from place_ingest.storage.sqlmodel_models import JobExecutionState, Place, PlaceEnrichment

logger = logging.getLogger(__name__)

_PLACE_MUTABLE_COLUMNS = (
    "name",
    "region",
    "category",
    "address",
    "road_address",
    "latitude",
    "longitude",
    "source_payload_json",
    "last_job_name",
    "updated_at",
)


@dataclass(slots=True)
class ChunkWriteResult:
    upserted: int = 0
    deleted: int = 0
    enrichments: int = 0


class PlaceRepository:
    """Facade that persists places and checkpoints using SQLModel and Alembic."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def upsert_by_natural_key(self, place: PlaceRecord, *, job_name: str | None = None) -> int:
        """Insert or update one place by its natural key; returns rows affected."""

        try:
            with Session(self.engine) as session:
                affected = self._upsert_place(session, place, job_name=job_name, now=utc_now())
                session.commit()
                return affected
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to upsert place {place.natural_key!r}: {error}") from error

    def delete_by_identity(self, place_id: str) -> int:
        try:
            with Session(self.engine) as session:
                result = session.exec(delete(Place).where(col(Place.place_id) == place_id))
                session.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to delete place {place_id!r}: {error}") from error

    def apply_chunk(self, write: ChunkWrite, *, job_name: str) -> ChunkWriteResult:
        """Apply all upserts, enrichments and deletes of a chunk in one transaction."""

        outcome = ChunkWriteResult()
        now = utc_now()
        try:
            with Session(self.engine) as session:
                for place in write.upserts:
                    outcome.upserted += self._upsert_place(
                        session,
                        place,
                        job_name=job_name,
                        now=now,
                    )
                for place_id, payload in write.enrichments.items():
                    outcome.enrichments += self._store_enrichment(session, place_id, payload, now)
                for place_id in write.deletes:
                    result = session.exec(delete(Place).where(col(Place.place_id) == place_id))
                    outcome.deleted += int(result.rowcount or 0)
                session.commit()
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to write chunk for job {job_name!r}: {error}") from error
        return outcome

    def save_enrichment(self, place_id: str, payload: EnrichmentPayload) -> int:
        try:
            with Session(self.engine) as session:
                stored = self._store_enrichment(session, place_id, payload, utc_now())
                session.commit()
                return stored
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to store enrichment for {place_id!r}: {error}") from error

    def get_place(self, place_id: str) -> PlaceView | None:
        with Session(self.engine) as session:
            row = session.get(Place, place_id)
            return _to_place_view(row) if row is not None else None

    def find_by_natural_key(self, natural_key: str) -> PlaceView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Place).where(Place.natural_key == natural_key)).one_or_none()
            return _to_place_view(row) if row is not None else None

    def count_places(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(Place)).one())

    def list_enrichments(self, place_id: str) -> dict[str, Any]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PlaceEnrichment).where(PlaceEnrichment.place_id == place_id),
            ).all()
        return {row.kind: json.loads(row.payload_json) for row in rows}

    def load_checkpoint(self, job_name: str) -> JobCheckpoint | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobExecutionState).where(JobExecutionState.job_name == job_name),
            ).one_or_none()
            return _to_checkpoint(row) if row is not None else None

    def save_checkpoint(self, checkpoint: JobCheckpoint) -> JobCheckpoint:
        """Upsert a checkpoint by job name.

        `last_processed_page` and `total_processed_records` never move backwards:
        the stored value wins when a save carries a smaller one.
        """

        now = utc_now()
        state_json = (
            json.dumps(checkpoint.regional_state.to_dict(), ensure_ascii=False, sort_keys=True)
            if checkpoint.regional_state is not None
            else None
        )
        status = (
            checkpoint.last_execution_status.value
            if checkpoint.last_execution_status is not None
            else None
        )
        processed_at = to_db_datetime(checkpoint.last_processed_timestamp or now)
        try:
            while True:
                with Session(self.engine) as session:
                    result = session.exec(
                        sa_update(JobExecutionState)
                        .where(col(JobExecutionState.job_name) == checkpoint.job_name)
                        .values(
                            last_processed_page=func.max(
                                col(JobExecutionState.last_processed_page),
                                checkpoint.last_processed_page,
                            ),
                            total_processed_records=func.max(
                                col(JobExecutionState.total_processed_records),
                                checkpoint.total_processed_records,
                            ),
                            last_processed_timestamp=processed_at,
                            last_execution_status=status,
                            state_json=case(
                                (
                                    col(JobExecutionState.last_processed_page)
                                    <= checkpoint.last_processed_page,
                                    state_json,
                                ),
                                else_=col(JobExecutionState.state_json),
                            ),
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    if result.rowcount == 1:
                        session.commit()
                        break

                    session.add(
                        JobExecutionState(
                            job_name=checkpoint.job_name,
                            last_processed_page=max(0, checkpoint.last_processed_page),
                            last_processed_timestamp=processed_at,
                            total_processed_records=max(0, checkpoint.total_processed_records),
                            last_execution_status=status,
                            state_json=state_json,
                            created_at=now,
                            updated_at=now,
                        ),
                    )
                    try:
                        session.commit()
                        break
                    except IntegrityError:
                        session.rollback()
                        continue
        except SQLAlchemyError as error:
            raise StorageError(
                f"Failed to save checkpoint for job {checkpoint.job_name!r}: {error}",
            ) from error

        stored = self.load_checkpoint(checkpoint.job_name)
        if stored is None:
            raise StorageError(f"Checkpoint for job {checkpoint.job_name!r} vanished after save")
        if stored.last_processed_page > checkpoint.last_processed_page:
            logger.warning(
                "Ignored checkpoint page regression for job %s: stored=%d requested=%d",
                checkpoint.job_name,
                stored.last_processed_page,
                checkpoint.last_processed_page,
            )
        return stored

    def _upsert_place(
        self,
        session: Session,
        place: PlaceRecord,
        *,
        job_name: str | None,
        now: datetime,
    ) -> int:
        statement = sqlite_insert(Place).values(
            place_id=place.place_id,
            natural_key=place.natural_key,
            name=place.name,
            region=place.region,
            category=place.category,
            address=place.address,
            road_address=place.road_address,
            latitude=place.latitude,
            longitude=place.longitude,
            source_payload_json=json.dumps(
                place.source_payload,
                ensure_ascii=False,
                sort_keys=True,
                default=str,
            ),
            last_job_name=job_name,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        statement = statement.on_conflict_do_update(
            index_elements=["natural_key"],
            set_={name: statement.excluded[name] for name in _PLACE_MUTABLE_COLUMNS},
        )
        result = session.exec(statement)
        return int(result.rowcount or 0)

    def _store_enrichment(
        self,
        session: Session,
        place_id: str,
        payload: EnrichmentPayload,
        now: datetime,
    ) -> int:
        stored = 0
        for kind, section in payload.sections.items():
            statement = sqlite_insert(PlaceEnrichment).values(
                place_id=place_id,
                kind=kind.value,
                payload_json=json.dumps(section, ensure_ascii=False, sort_keys=True, default=str),
                updated_at=to_db_datetime(now),
            )
            statement = statement.on_conflict_do_update(
                index_elements=["place_id", "kind"],
                set_={
                    "payload_json": statement.excluded.payload_json,
                    "updated_at": statement.excluded.updated_at,
                },
            )
            session.exec(statement)
            stored += 1
        return stored


def _to_place_view(row: Place) -> PlaceView:
    return PlaceView(
        place_id=row.place_id,
        natural_key=row.natural_key,
        name=row.name,
        region=row.region,
        category=row.category,
        address=row.address,
        road_address=row.road_address,
        latitude=row.latitude,
        longitude=row.longitude,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_checkpoint(row: JobExecutionState) -> JobCheckpoint:
    regional_state = None
    if row.state_json:
        parsed = json.loads(row.state_json)
        if isinstance(parsed, dict):
            regional_state = RegionalProcessingState.from_dict(parsed)
    return JobCheckpoint(
        job_name=row.job_name,
        last_processed_page=row.last_processed_page,
        last_processed_timestamp=optional_utc(row.last_processed_timestamp),
        total_processed_records=row.total_processed_records,
        last_execution_status=(
            ExecutionStatus(row.last_execution_status)
            if row.last_execution_status is not None
            else None
        ),
        regional_state=regional_state,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
