from pathlib import Path

import allure
from sqlalchemy import inspect, text

from place_ingest.ingestion.repository import PlaceRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = PlaceRepository(tmp_path / "migrations.db")
    repository.init_schema()
    # second run is a no-op
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
        foreign_keys = connection.execute(text("PRAGMA foreign_keys")).scalar_one()
    tables = set(inspect(repository.engine).get_table_names())
    repository.close()

    assert version == "20261019_0001"
    assert str(journal_mode).lower() == "wal"
    assert foreign_keys == 1
    assert {
        "places",
        "place_enrichments",
        "job_execution_states",
        "update_tasks",
        "update_task_events",
        "update_task_progress",
        "queue_workers",
    } <= tables


def test_claim_index_exists(tmp_path: Path) -> None:
    repository = PlaceRepository(tmp_path / "migrations.db")
    repository.init_schema()

    indexes = inspect(repository.engine).get_indexes("update_tasks")
    repository.close()

    by_name = {index["name"]: index["column_names"] for index in indexes}
    assert by_name["ix_update_tasks_claim_order"] == [
        "status",
        "priority",
        "scheduled_at",
        "created_at",
    ]
