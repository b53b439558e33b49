"""Collaborator contracts consumed by the pipeline and the workers."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from place_ingest.ingestion.models import (
    Coordinate,
    EnrichmentPayload,
    EnrichmentTarget,
    Region,
    SearchPage,
    WorkFlags,
)


class SearchClient(Protocol):
    """Reads one page of candidate records for a search position."""

    def search(self, region: Region, coordinate: Coordinate, query: str, page: int) -> SearchPage:
        """Return one page; an empty page marks exhaustion of the query.

        Raises `TransientIOError` on timeout or unavailability.
        """
        raise NotImplementedError


class EnrichmentClient(Protocol):
    """Fetches enrichment sections for one place."""

    def enrich(self, target: EnrichmentTarget, flags: WorkFlags) -> EnrichmentPayload:
        """Return the requested sections.

        Raises `NotFoundError` when the target no longer exists upstream and
        `TransientIOError` on timeout or unavailability.
        """
        raise NotImplementedError


@runtime_checkable
class ClosableClient(Protocol):
    """Optional hook for clients holding network resources."""

    def close(self) -> None:
        raise NotImplementedError
