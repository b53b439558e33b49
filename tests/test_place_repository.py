from dataclasses import replace

import allure
import pytest
from fakes import make_place

from place_ingest.ingestion.checkpoint import CheckpointStore
from place_ingest.ingestion.errors import StorageError
from place_ingest.ingestion.models import (
    ChunkWrite,
    EnrichmentKind,
    EnrichmentPayload,
    ExecutionStatus,
    JobCheckpoint,
    RegionalProcessingState,
)
from place_ingest.ingestion.repository import PlaceRepository

pytestmark = [
    allure.epic("Place Ingestion"),
    allure.feature("Persistence & Checkpoints"),
]


def test_double_upsert_with_same_natural_key_yields_one_record(
    place_repository: PlaceRepository,
) -> None:
    place = make_place("Onion Anguk")

    assert place_repository.upsert_by_natural_key(place, job_name="job") == 1
    assert place_repository.upsert_by_natural_key(place, job_name="job") == 1

    assert place_repository.count_places() == 1
    stored = place_repository.get_place(place.place_id)
    assert stored is not None
    assert stored.name == "Onion Anguk"


def test_upsert_updates_mutable_fields_in_place(place_repository: PlaceRepository) -> None:
    place = make_place("Onion Anguk")
    place_repository.upsert_by_natural_key(place)
    created_at = place_repository.get_place(place.place_id).created_at

    place_repository.upsert_by_natural_key(replace(place, category="bakery", latitude=37.58))

    stored = place_repository.find_by_natural_key(place.natural_key)
    assert stored is not None
    assert stored.category == "bakery"
    assert stored.latitude == pytest.approx(37.58)
    assert stored.created_at == created_at
    assert place_repository.count_places() == 1


def test_delete_by_identity_removes_place_and_enrichments(
    place_repository: PlaceRepository,
) -> None:
    place = make_place("Closed Diner")
    place_repository.upsert_by_natural_key(place)
    place_repository.save_enrichment(
        place.place_id,
        EnrichmentPayload(sections={EnrichmentKind.MENUS: [{"item": "soup"}]}),
    )

    assert place_repository.delete_by_identity(place.place_id) == 1
    assert place_repository.delete_by_identity(place.place_id) == 0
    assert place_repository.get_place(place.place_id) is None
    assert place_repository.list_enrichments(place.place_id) == {}


def test_enrichment_sections_are_overwritten_per_kind(place_repository: PlaceRepository) -> None:
    place = make_place("Onion Anguk")
    place_repository.upsert_by_natural_key(place)

    place_repository.save_enrichment(
        place.place_id,
        EnrichmentPayload(
            sections={EnrichmentKind.MENUS: ["latte"], EnrichmentKind.IMAGES: ["a.jpg"]},
        ),
    )
    stored = place_repository.save_enrichment(
        place.place_id,
        EnrichmentPayload(sections={EnrichmentKind.MENUS: ["latte", "scone"]}),
    )

    assert stored == 1
    assert place_repository.list_enrichments(place.place_id) == {
        "images": ["a.jpg"],
        "menus": ["latte", "scone"],
    }


def test_enrichment_for_unknown_place_is_a_storage_error(
    place_repository: PlaceRepository,
) -> None:
    with pytest.raises(StorageError):
        place_repository.save_enrichment(
            "missing",
            EnrichmentPayload(sections={EnrichmentKind.REVIEWS: []}),
        )


def test_apply_chunk_is_all_or_nothing(place_repository: PlaceRepository) -> None:
    kept = make_place("Kept")
    doomed = make_place("Doomed")
    place_repository.upsert_by_natural_key(doomed)

    result = place_repository.apply_chunk(
        ChunkWrite(
            upserts=[kept],
            deletes=[doomed.place_id],
            enrichments={kept.place_id: EnrichmentPayload(sections={EnrichmentKind.MENUS: []})},
        ),
        job_name="job",
    )
    assert (result.upserted, result.deleted, result.enrichments) == (1, 1, 1)

    with pytest.raises(StorageError):
        place_repository.apply_chunk(
            ChunkWrite(
                upserts=[make_place("Never Stored")],
                enrichments={"ghost": EnrichmentPayload(sections={EnrichmentKind.MENUS: []})},
            ),
            job_name="job",
        )
    assert place_repository.count_places() == 1
    assert place_repository.find_by_natural_key(make_place("Never Stored").natural_key) is None


def test_checkpoint_page_never_regresses(place_repository: PlaceRepository) -> None:
    store = CheckpointStore(place_repository)
    ahead = RegionalProcessingState(current_region="BUSAN", query_index=2)
    behind = RegionalProcessingState(current_region="SEOUL")

    store.save(
        "job",
        JobCheckpoint(
            job_name="job",
            last_processed_page=5,
            total_processed_records=40,
            last_execution_status=ExecutionStatus.COMPLETED,
            regional_state=ahead,
        ),
    )
    stored = store.save(
        "job",
        JobCheckpoint(
            job_name="job",
            last_processed_page=3,
            total_processed_records=10,
            last_execution_status=ExecutionStatus.FAILED,
            regional_state=behind,
        ),
    )

    assert stored.last_processed_page == 5
    assert stored.total_processed_records == 40
    assert stored.last_execution_status == ExecutionStatus.FAILED
    assert stored.regional_state is not None
    assert stored.regional_state.current_region == "BUSAN"

    advanced = store.save("job", JobCheckpoint(job_name="job", last_processed_page=6))
    assert advanced.last_processed_page == 6


def test_checkpoints_are_isolated_per_job_name(place_repository: PlaceRepository) -> None:
    store = CheckpointStore(place_repository)

    store.save("places", JobCheckpoint(job_name="ignored", last_processed_page=2))

    assert store.load("ignored") is None
    loaded = store.load("places")
    assert loaded is not None
    assert loaded.job_name == "places"
    assert loaded.last_processed_page == 2
    assert loaded.regional_state is None
