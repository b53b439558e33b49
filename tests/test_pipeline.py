import allure
import pytest
from fakes import BUSAN, SEOUL, FakeEnrichmentClient, FakeSearchClient, make_place, raw_item

from place_ingest.ingestion.checkpoint import CheckpointStore
from place_ingest.ingestion.errors import (
    ChunkAbortedError,
    SourceRequestError,
    StorageError,
    TransientIOError,
)
from place_ingest.ingestion.models import ExecutionStatus, SearchPage, WorkFlags
from place_ingest.ingestion.pipeline import ChunkPipeline
from place_ingest.ingestion.repository import PlaceRepository
from place_ingest.ingestion.skip_policy import RetryLimits

pytestmark = [
    allure.epic("Place Ingestion"),
    allure.feature("Chunk Pipeline"),
]


def _pipeline(
    repository: PlaceRepository,
    search: FakeSearchClient,
    enrichment: FakeEnrichmentClient | None = None,
    **overrides,
) -> ChunkPipeline:
    options = {
        "job_name": "places",
        "search_client": search,
        "enrichment_client": enrichment or FakeEnrichmentClient(),
        "repository": repository,
        "checkpoints": CheckpointStore(repository),
        "regions": (SEOUL, BUSAN),
        "work_flags": WorkFlags(menus=True),
        "max_pages": 5,
        "skip_limit": 5,
        "concurrency_limit": 2,
        "retry_limits": RetryLimits(remote_service=2, socket_timeout=1),
    }
    options.update(overrides)
    return ChunkPipeline(**options)


def test_chunk_persists_places_enrichments_and_checkpoint(
    place_repository: PlaceRepository,
) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(items=[raw_item("Alpha"), raw_item("Bravo")]),
            ("SEOUL", "cafe", 2): SearchPage(items=[raw_item("Delta")], is_last=True),
        },
    )
    enrichment = FakeEnrichmentClient()

    result = _pipeline(place_repository, search, enrichment).process(10)

    assert (result.read, result.processed, result.skipped, result.filtered) == (3, 3, 0, 0)
    assert result.pages_committed == 2
    assert result.end_of_pass is True
    assert place_repository.count_places() == 3
    alpha = make_place("Alpha")
    assert place_repository.list_enrichments(alpha.place_id) == {
        "menus": {"place": "Alpha", "kind": "menus"},
    }
    assert {name for name, _flags in enrichment.calls} == {"Alpha", "Bravo", "Delta"}

    checkpoint = place_repository.load_checkpoint("places")
    assert checkpoint is not None
    assert checkpoint.last_processed_page == 2
    assert checkpoint.total_processed_records == 3
    assert checkpoint.last_execution_status == ExecutionStatus.PASS_COMPLETED
    assert checkpoint.regional_state is not None
    assert checkpoint.regional_state.pass_number == 2
    assert checkpoint.regional_state.completed_regions == []


def test_chunk_size_is_enforced_and_resume_continues_inside_page(
    place_repository: PlaceRepository,
) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[raw_item("Alpha"), raw_item("Bravo"), raw_item("Charlie")],
            ),
        },
    )
    pipeline = _pipeline(place_repository, search)

    first = pipeline.process(2)

    assert (first.read, first.processed, first.pages_committed) == (2, 2, 0)
    assert first.end_of_pass is False
    state = place_repository.load_checkpoint("places").regional_state
    assert (state.current_region, state.query_index, state.page, state.item_offset) == (
        "SEOUL",
        0,
        1,
        2,
    )

    second = pipeline.process(2)

    assert second.read == 1
    assert second.processed == 1
    assert second.pages_committed == 1
    assert place_repository.count_places() == 3
    checkpoint = place_repository.load_checkpoint("places")
    assert checkpoint.last_processed_page == 1
    assert checkpoint.total_processed_records == 3


def test_invalid_records_are_skipped_within_limit(place_repository: PlaceRepository) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[raw_item("Alpha"), {"name": "No coordinates"}, raw_item("Bravo")],
                is_last=True,
            ),
        },
    )

    result = _pipeline(place_repository, search).process(10)

    assert (result.processed, result.skipped) == (2, 1)
    assert "validation" in result.errors[0]
    assert place_repository.count_places() == 2


def test_skip_limit_exceeded_aborts_chunk_without_writes(
    place_repository: PlaceRepository,
) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[{"name": "Bad 1"}, raw_item("Alpha"), {"name": "Bad 2"}],
                is_last=True,
            ),
        },
    )

    with pytest.raises(ChunkAbortedError) as error:
        _pipeline(place_repository, search, skip_limit=1).process(10)

    assert error.value.cause_kind == "validation"
    assert error.value.result is not None
    assert error.value.result.skipped == 1
    assert place_repository.count_places() == 0
    assert place_repository.load_checkpoint("places") is None


def _pages_with_two_bad_records(*names: str) -> dict[tuple[str, str, int], SearchPage]:
    return {
        ("SEOUL", "cafe", page): SearchPage(
            items=[raw_item(name), {"name": f"Bad {page}a"}, {"name": f"Bad {page}b"}],
        )
        for page, name in enumerate(names, start=1)
    }


def test_skip_budget_spans_chunks_of_one_execution(place_repository: PlaceRepository) -> None:
    search = FakeSearchClient(pages=_pages_with_two_bad_records("Alpha", "Bravo"))
    pipeline = _pipeline(place_repository, search, skip_limit=3)

    first = pipeline.process(3)
    assert (first.processed, first.skipped) == (1, 2)
    assert place_repository.load_checkpoint("places").regional_state.skipped_total == 2

    with pytest.raises(ChunkAbortedError) as error:
        pipeline.process(3)

    assert error.value.cause_kind == "validation"
    assert error.value.result.skipped == 1
    assert place_repository.count_places() == 1
    checkpoint = place_repository.load_checkpoint("places")
    assert checkpoint.last_execution_status == ExecutionStatus.FAILED
    assert checkpoint.last_processed_page == 1
    assert (checkpoint.regional_state.page, checkpoint.regional_state.skipped_total) == (2, 2)


def test_restart_after_failed_execution_gets_fresh_skip_budget(
    place_repository: PlaceRepository,
) -> None:
    search = FakeSearchClient(pages=_pages_with_two_bad_records("Alpha", "Bravo"))
    pipeline = _pipeline(place_repository, search, skip_limit=3)
    pipeline.process(3)
    with pytest.raises(ChunkAbortedError):
        pipeline.process(3)

    restarted = pipeline.process(3)

    assert (restarted.processed, restarted.skipped) == (1, 2)
    assert place_repository.count_places() == 2
    checkpoint = place_repository.load_checkpoint("places")
    assert checkpoint.last_execution_status == ExecutionStatus.COMPLETED
    assert checkpoint.last_processed_page == 2
    assert checkpoint.regional_state.skipped_total == 2


def test_new_pass_resets_skip_budget(place_repository: PlaceRepository) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[raw_item("Alpha"), {"name": "Bad 1"}],
                is_last=True,
            ),
        },
    )

    result = _pipeline(place_repository, search, skip_limit=3).process(10)

    assert result.end_of_pass is True
    assert result.skipped == 1
    checkpoint = place_repository.load_checkpoint("places")
    assert checkpoint.regional_state.pass_number == 2
    assert checkpoint.regional_state.skipped_total == 0


def test_unclassified_fault_aborts_and_marks_checkpoint_failed(
    place_repository: PlaceRepository,
) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[raw_item("Alpha"), raw_item("Bravo")],
                is_last=True,
            ),
        },
    )
    enrichment = FakeEnrichmentClient(
        errors={"Bravo": [SourceRequestError("forbidden", status_code=403)]},
    )
    pipeline = _pipeline(place_repository, search, enrichment)
    pipeline.process(1)

    with pytest.raises(ChunkAbortedError):
        pipeline.process(1)

    checkpoint = place_repository.load_checkpoint("places")
    assert checkpoint.last_execution_status == ExecutionStatus.FAILED
    assert checkpoint.regional_state.item_offset == 1
    assert place_repository.count_places() == 1

    # the failed position is replayed on the next call
    replayed = pipeline.process(1)
    assert replayed.processed == 1
    assert place_repository.count_places() == 2


def test_not_found_during_enrichment_deletes_stored_place(
    place_repository: PlaceRepository,
) -> None:
    closed = make_place("Closed Diner")
    place_repository.upsert_by_natural_key(closed)
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[raw_item("Closed Diner"), raw_item("Alpha")],
                is_last=True,
            ),
        },
    )
    enrichment = FakeEnrichmentClient(missing={"Closed Diner"})

    result = _pipeline(place_repository, search, enrichment).process(10)

    assert result.deleted == 1
    assert result.processed == 1
    assert result.skipped == 0
    assert place_repository.get_place(closed.place_id) is None
    assert place_repository.count_places() == 1


def test_excluded_places_are_counted_but_not_stored(place_repository: PlaceRepository) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "cafe", 1): SearchPage(
                items=[raw_item("Gangnam Night Club"), raw_item("Alpha")],
                is_last=True,
            ),
        },
    )
    enrichment = FakeEnrichmentClient()

    result = _pipeline(place_repository, search, enrichment).process(10)

    assert (result.processed, result.filtered, result.skipped) == (1, 1, 0)
    assert [name for name, _flags in enrichment.calls] == ["Alpha"]


def test_transient_search_fault_is_retried_then_skipped(place_repository: PlaceRepository) -> None:
    search = FakeSearchClient(
        pages={
            ("SEOUL", "bakery", 1): SearchPage(items=[raw_item("Bakery")], is_last=True),
        },
        errors={("SEOUL", "cafe", 1): [TransientIOError("down") for _ in range(3)]},
    )

    result = _pipeline(place_repository, search).process(10)

    assert search.calls.count(("SEOUL", "cafe", 1)) == 3
    assert (result.skipped, result.processed) == (1, 1)
    state = place_repository.load_checkpoint("places").regional_state
    assert any("remote_service" in error for error in state.errors)


def test_transient_enrichment_fault_recovers_on_retry(place_repository: PlaceRepository) -> None:
    search = FakeSearchClient(
        pages={("SEOUL", "cafe", 1): SearchPage(items=[raw_item("Alpha")], is_last=True)},
    )
    enrichment = FakeEnrichmentClient(errors={"Alpha": [TransientIOError("flaky")]})

    result = _pipeline(place_repository, search, enrichment).process(10)

    assert (result.processed, result.skipped) == (1, 0)
    assert len(enrichment.calls) == 2
    assert place_repository.list_enrichments(make_place("Alpha").place_id) != {}


def test_storage_failure_aborts_chunk(place_repository: PlaceRepository, monkeypatch) -> None:
    search = FakeSearchClient(
        pages={("SEOUL", "cafe", 1): SearchPage(items=[raw_item("Alpha")], is_last=True)},
    )

    def _broken_apply(*_args, **_kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(place_repository, "apply_chunk", _broken_apply)

    with pytest.raises(ChunkAbortedError) as error:
        _pipeline(place_repository, search).process(10)

    assert error.value.cause_kind == "storage"
    assert place_repository.load_checkpoint("places") is None


def test_batch_size_must_be_positive(place_repository: PlaceRepository) -> None:
    with pytest.raises(ValueError, match="batch_size"):
        _pipeline(place_repository, FakeSearchClient()).process(0)
