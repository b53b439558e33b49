"""SQLModel ORM tables for place ingestion storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Place(SQLModel, table=True):
    __tablename__ = "places"  # type: ignore[bad-override]

    place_id: str = Field(primary_key=True)
    natural_key: str = Field(unique=True, index=True)
    name: str
    region: str = Field(index=True)
    category: str | None = None
    address: str | None = None
    road_address: str | None = None
    latitude: float
    longitude: float
    source_payload_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_job_name: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlaceEnrichment(SQLModel, table=True):
    __tablename__ = "place_enrichments"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("place_id", "kind", name="uq_place_enrichments_place_kind"),)

    id: int | None = Field(default=None, primary_key=True)
    place_id: str = Field(
        sa_column=Column(
            ForeignKey("places.place_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobExecutionState(SQLModel, table=True):
    __tablename__ = "job_execution_states"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_name: str = Field(unique=True, index=True)
    last_processed_page: int = 0
    last_processed_timestamp: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    total_processed_records: int = 0
    last_execution_status: str | None = None
    state_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UpdateTask(SQLModel, table=True):
    __tablename__ = "update_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "ix_update_tasks_claim_order",
            "status",
            "priority",
            "scheduled_at",
            "created_at",
        ),
    )

    task_id: str = Field(primary_key=True)
    target_id: str = Field(index=True)
    update_menus: bool = False
    update_images: bool = False
    update_reviews: bool = False
    priority: int = 0
    status: str = Field(index=True)
    attempts: int = 0
    max_attempts: int = 3
    worker_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UpdateTaskEvent(SQLModel, table=True):
    __tablename__ = "update_task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("update_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UpdateTaskProgress(SQLModel, table=True):
    __tablename__ = "update_task_progress"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "attempt", name="uq_update_task_progress_task_attempt"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("update_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt: int
    target_id: str
    status: str
    worker_id: str | None = None
    update_menus: bool = False
    update_images: bool = False
    update_reviews: bool = False
    start_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    end_time: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class QueueWorker(SQLModel, table=True):
    __tablename__ = "queue_workers"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    hostname: str = Field(index=True)
    threads: int = 1
    enabled: bool = True
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    tasks_processed: int = 0
    tasks_failed: int = 0
    current_task_id: str | None = None
