"""Deterministic fault classification and skip / retry / abort decisions.

Every error raised while reading, enriching or writing places is mapped to one
`FaultKind`. The decision for a fault is a pure function of the kind, the
number of retries already spent on the item and the job-wide skip budget.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import httpx
from sqlalchemy.exc import SQLAlchemyError

from place_ingest.ingestion.errors import (
    NotFoundError,
    StorageError,
    TransientIOError,
    TransientKind,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FaultKind(str, Enum):
    """Closed set of fault categories the pipeline knows how to handle."""

    VALIDATION = "validation"
    REMOTE_SERVICE = "remote_service"
    SOCKET_TIMEOUT = "socket_timeout"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
    UNCLASSIFIED = "unclassified"


class FaultDecision(str, Enum):
    SKIP = "skip"
    RETRY = "retry"
    ABORT = "abort"
    HANDLED = "handled"


TRANSIENT_KINDS = frozenset({FaultKind.REMOTE_SERVICE, FaultKind.SOCKET_TIMEOUT})
_SKIPPABLE_KINDS = frozenset({FaultKind.VALIDATION, *TRANSIENT_KINDS})


@dataclass(slots=True, frozen=True)
class RetryLimits:
    """Per-kind retry limits for transient faults."""

    remote_service: int = 3
    socket_timeout: int = 2

    def limit_for(self, kind: FaultKind) -> int:
        if kind == FaultKind.REMOTE_SERVICE:
            return self.remote_service
        if kind == FaultKind.SOCKET_TIMEOUT:
            return self.socket_timeout
        return 0


@dataclass(slots=True)
class FaultClassification:
    """Classification result with the rule that matched."""

    kind: FaultKind
    reason_code: str
    matched_rule: str


def classify_fault(error: BaseException) -> FaultClassification:  # noqa: PLR0911
    """Map an exception to a fault kind, naming the matching rule."""

    if isinstance(error, NotFoundError):
        return FaultClassification(FaultKind.NOT_FOUND, error.code, "not_found_error")
    if isinstance(error, TransientIOError):
        kind = (
            FaultKind.SOCKET_TIMEOUT
            if error.kind == TransientKind.SOCKET_TIMEOUT
            else FaultKind.REMOTE_SERVICE
        )
        return FaultClassification(kind, error.code, "transient_io_error")
    if isinstance(error, ValidationError):
        return FaultClassification(FaultKind.VALIDATION, error.code, "validation_error")
    if isinstance(error, StorageError):
        return FaultClassification(FaultKind.STORAGE, error.code, "storage_error")
    if isinstance(error, (SQLAlchemyError, sqlite3.Error)):
        return FaultClassification(FaultKind.STORAGE, type(error).__name__, "database_error")
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return FaultClassification(FaultKind.SOCKET_TIMEOUT, type(error).__name__, "timeout")
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == 404:  # noqa: PLR2004
            return FaultClassification(FaultKind.NOT_FOUND, "http_404", "http_status")
        if status_code == 429 or status_code >= 500:  # noqa: PLR2004
            return FaultClassification(
                FaultKind.REMOTE_SERVICE,
                f"http_{status_code}",
                "http_status",
            )
        return FaultClassification(FaultKind.UNCLASSIFIED, f"http_{status_code}", "http_status")
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return FaultClassification(FaultKind.REMOTE_SERVICE, type(error).__name__, "transport")
    if isinstance(error, (ValueError, KeyError)):
        return FaultClassification(FaultKind.VALIDATION, type(error).__name__, "parse_error")
    return FaultClassification(FaultKind.UNCLASSIFIED, type(error).__name__, "fallback")


def classify(error: BaseException) -> FaultKind:
    return classify_fault(error).kind


def should_skip(kind: FaultKind, skip_count: int, skip_limit: int) -> bool:
    """Whether a fault of this kind may be skipped with `skip_count` skips already used."""

    if kind not in _SKIPPABLE_KINDS:
        return False
    return skip_count < skip_limit


def decide(
    kind: FaultKind,
    *,
    attempt: int,
    skip_count: int,
    skip_limit: int,
    limits: RetryLimits | None = None,
) -> FaultDecision:
    """Decide what to do with a fault.

    `attempt` is the number of retries already spent on the same item.
    """

    if kind == FaultKind.NOT_FOUND:
        return FaultDecision.HANDLED
    if kind in TRANSIENT_KINDS and attempt < (limits or RetryLimits()).limit_for(kind):
        return FaultDecision.RETRY
    if should_skip(kind, skip_count, skip_limit):
        return FaultDecision.SKIP
    return FaultDecision.ABORT


@dataclass(slots=True)
class SkipBudget:
    """Skip counter owned by one job execution."""

    limit: int
    used: int = 0

    def allows(self, kind: FaultKind) -> bool:
        return should_skip(kind, self.used, self.limit)

    def consume(self) -> None:
        self.used += 1

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


def call_with_retries(
    operation: Callable[[], T],
    *,
    limits: RetryLimits,
    delay_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run `operation`, retrying transient faults up to the per-kind limit.

    Non-transient faults and exhausted retries propagate to the caller.
    """

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:
            kind = classify(error)
            if kind not in TRANSIENT_KINDS or attempt >= limits.limit_for(kind):
                raise
            attempt += 1
            logger.warning(
                "Retrying %s after %s fault (%d/%d): %s",
                label,
                kind.value,
                attempt,
                limits.limit_for(kind),
                error,
            )
            if delay_seconds > 0:
                sleep(delay_seconds * attempt)
