import sqlite3

import allure
import httpx
import pytest

from place_ingest.ingestion.errors import (
    NotFoundError,
    SourceRequestError,
    StorageError,
    TransientIOError,
    TransientKind,
    ValidationError,
)
from place_ingest.ingestion.skip_policy import (
    FaultDecision,
    FaultKind,
    RetryLimits,
    SkipBudget,
    call_with_retries,
    classify,
    classify_fault,
    decide,
    should_skip,
)

pytestmark = [
    allure.epic("Place Ingestion"),
    allure.feature("Fault Classification"),
]


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.com/places")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ValidationError("bad record"), FaultKind.VALIDATION),
        (ValueError("bad float"), FaultKind.VALIDATION),
        (TransientIOError("down"), FaultKind.REMOTE_SERVICE),
        (TransientIOError("slow", kind=TransientKind.SOCKET_TIMEOUT), FaultKind.SOCKET_TIMEOUT),
        (httpx.ReadTimeout("slow"), FaultKind.SOCKET_TIMEOUT),
        (TimeoutError(), FaultKind.SOCKET_TIMEOUT),
        (httpx.ConnectError("refused"), FaultKind.REMOTE_SERVICE),
        (_status_error(503), FaultKind.REMOTE_SERVICE),
        (_status_error(429), FaultKind.REMOTE_SERVICE),
        (_status_error(404), FaultKind.NOT_FOUND),
        (_status_error(401), FaultKind.UNCLASSIFIED),
        (NotFoundError("closed"), FaultKind.NOT_FOUND),
        (StorageError("disk full"), FaultKind.STORAGE),
        (sqlite3.OperationalError("locked"), FaultKind.STORAGE),
        (SourceRequestError("forbidden", status_code=403), FaultKind.UNCLASSIFIED),
        (RuntimeError("surprise"), FaultKind.UNCLASSIFIED),
    ],
)
def test_classify_maps_errors_to_fault_kinds(error: Exception, expected: FaultKind) -> None:
    assert classify(error) == expected


def test_classify_fault_names_matching_rule() -> None:
    classification = classify_fault(_status_error(502))

    assert classification.kind == FaultKind.REMOTE_SERVICE
    assert classification.reason_code == "http_502"
    assert classification.matched_rule == "http_status"


def test_should_skip_only_below_limit_for_skippable_kinds() -> None:
    assert should_skip(FaultKind.VALIDATION, 0, 3) is True
    assert should_skip(FaultKind.VALIDATION, 2, 3) is True
    assert should_skip(FaultKind.VALIDATION, 3, 3) is False
    assert should_skip(FaultKind.REMOTE_SERVICE, 0, 3) is True
    assert should_skip(FaultKind.SOCKET_TIMEOUT, 0, 3) is True
    for count in range(5):
        assert should_skip(FaultKind.STORAGE, count, 10) is False
        assert should_skip(FaultKind.UNCLASSIFIED, count, 10) is False


def test_decide_retries_transient_faults_before_skipping() -> None:
    limits = RetryLimits(remote_service=3, socket_timeout=2)

    def _decide(kind: FaultKind, attempt: int, skip_count: int, skip_limit: int) -> FaultDecision:
        return decide(
            kind,
            attempt=attempt,
            skip_count=skip_count,
            skip_limit=skip_limit,
            limits=limits,
        )

    assert _decide(FaultKind.REMOTE_SERVICE, 0, 0, 5) == FaultDecision.RETRY
    assert _decide(FaultKind.REMOTE_SERVICE, 3, 0, 5) == FaultDecision.SKIP
    assert _decide(FaultKind.SOCKET_TIMEOUT, 2, 5, 5) == FaultDecision.ABORT
    assert _decide(FaultKind.NOT_FOUND, 0, 5, 5) == FaultDecision.HANDLED
    assert _decide(FaultKind.STORAGE, 0, 0, 5) == FaultDecision.ABORT
    assert _decide(FaultKind.VALIDATION, 0, 0, 0) == FaultDecision.ABORT


def test_skip_budget_tracks_remaining_skips() -> None:
    budget = SkipBudget(limit=2)

    assert budget.allows(FaultKind.VALIDATION) is True
    budget.consume()
    budget.consume()

    assert budget.remaining == 0
    assert budget.allows(FaultKind.VALIDATION) is False
    assert budget.allows(FaultKind.STORAGE) is False


def test_call_with_retries_recovers_from_transient_faults() -> None:
    outcomes: list[Exception | str] = [TransientIOError("down"), TransientIOError("down"), "ok"]
    delays: list[float] = []

    def _operation() -> str:
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    result = call_with_retries(
        _operation,
        limits=RetryLimits(remote_service=3),
        delay_seconds=0.5,
        sleep=delays.append,
    )

    assert result == "ok"
    assert delays == [0.5, 1.0]


def test_call_with_retries_gives_up_after_limit() -> None:
    calls = 0

    def _operation() -> None:
        nonlocal calls
        calls += 1
        raise TransientIOError("slow", kind=TransientKind.SOCKET_TIMEOUT)

    with pytest.raises(TransientIOError):
        call_with_retries(_operation, limits=RetryLimits(socket_timeout=2))

    assert calls == 3


def test_call_with_retries_does_not_retry_validation_errors() -> None:
    calls = 0

    def _operation() -> None:
        nonlocal calls
        calls += 1
        raise ValidationError("bad")

    with pytest.raises(ValidationError):
        call_with_retries(_operation, limits=RetryLimits())

    assert calls == 1
