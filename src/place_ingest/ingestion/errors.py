"""Error taxonomy shared by the pipeline, the worker pool and the source adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from place_ingest.ingestion.models import ChunkResult


class TransientKind(str, Enum):
    REMOTE_SERVICE = "remote_service"
    SOCKET_TIMEOUT = "socket_timeout"


@dataclass(slots=True)
class IngestionError(Exception):
    """Base ingestion error."""

    message: str
    code: str = "ingestion_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class ValidationError(IngestionError):
    """Malformed or incomplete record; skippable."""

    code: str = "validation_error"
    field_name: str | None = None


@dataclass(slots=True)
class TransientIOError(IngestionError):
    """Retryable collaborator failure (unavailable service or timeout)."""

    code: str = "transient_io"
    kind: TransientKind = TransientKind.REMOTE_SERVICE
    status_code: int | None = None


@dataclass(slots=True)
class NotFoundError(IngestionError):
    """Target no longer exists upstream; resolved by deleting it locally."""

    code: str = "not_found"
    target_id: str | None = None


@dataclass(slots=True)
class StorageError(IngestionError):
    """Persistence failure; never skipped."""

    code: str = "storage_error"


@dataclass(slots=True)
class SourceRequestError(IngestionError):
    """Non-retryable collaborator rejection, for example HTTP 4xx other than 404."""

    code: str = "source_request_error"
    status_code: int | None = None


@dataclass(slots=True)
class ChunkAbortedError(IngestionError):
    """Raised by the chunk pipeline when a fault aborts the whole chunk."""

    code: str = "chunk_aborted"
    result: ChunkResult | None = field(default=None, repr=False)
    cause_kind: str | None = None
