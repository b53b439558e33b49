"""Initial place ingestion, checkpoint and update queue schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "places",
        sa.Column("place_id", sa.String(), primary_key=True),
        sa.Column("natural_key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("road_address", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("source_payload_json", sa.Text(), nullable=True),
        sa.Column("last_job_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_places_natural_key", "places", ["natural_key"], unique=True)
    op.create_index("ix_places_region", "places", ["region"])

    op.create_table(
        "place_enrichments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "place_id",
            sa.String(),
            sa.ForeignKey("places.place_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("place_id", "kind", name="uq_place_enrichments_place_kind"),
    )
    op.create_index("ix_place_enrichments_place_id", "place_enrichments", ["place_id"])

    op.create_table(
        "job_execution_states",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("last_processed_page", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processed_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_processed_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_execution_status", sa.String(), nullable=True),
        sa.Column("state_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_job_execution_states_job_name",
        "job_execution_states",
        ["job_name"],
        unique=True,
    )

    op.create_table(
        "update_tasks",
        sa.Column("task_id", sa.String(), primary_key=True),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("update_menus", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("update_images", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("update_reviews", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_update_tasks_target_id", "update_tasks", ["target_id"])
    op.create_index("ix_update_tasks_status", "update_tasks", ["status"])
    op.create_index(
        "ix_update_tasks_claim_order",
        "update_tasks",
        ["status", "priority", "scheduled_at", "created_at"],
    )

    op.create_table(
        "update_task_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "task_id",
            sa.String(),
            sa.ForeignKey("update_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_update_task_events_task_id", "update_task_events", ["task_id"])

    op.create_table(
        "update_task_progress",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "task_id",
            sa.String(),
            sa.ForeignKey("update_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("update_menus", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("update_images", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("update_reviews", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.UniqueConstraint("task_id", "attempt", name="uq_update_task_progress_task_attempt"),
    )
    op.create_index("ix_update_task_progress_task_id", "update_task_progress", ["task_id"])

    op.create_table(
        "queue_workers",
        sa.Column("worker_id", sa.String(), primary_key=True),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("threads", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tasks_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_task_id", sa.String(), nullable=True),
    )
    op.create_index("ix_queue_workers_hostname", "queue_workers", ["hostname"])


def downgrade() -> None:
    op.drop_index("ix_queue_workers_hostname", table_name="queue_workers")
    op.drop_table("queue_workers")
    op.drop_index("ix_update_task_progress_task_id", table_name="update_task_progress")
    op.drop_table("update_task_progress")
    op.drop_index("ix_update_task_events_task_id", table_name="update_task_events")
    op.drop_table("update_task_events")
    op.drop_index("ix_update_tasks_claim_order", table_name="update_tasks")
    op.drop_index("ix_update_tasks_status", table_name="update_tasks")
    op.drop_index("ix_update_tasks_target_id", table_name="update_tasks")
    op.drop_table("update_tasks")
    op.drop_index("ix_job_execution_states_job_name", table_name="job_execution_states")
    op.drop_table("job_execution_states")
    op.drop_index("ix_place_enrichments_place_id", table_name="place_enrichments")
    op.drop_table("place_enrichments")
    op.drop_index("ix_places_region", table_name="places")
    op.drop_index("ix_places_natural_key", table_name="places")
    op.drop_table("places")
