"""Resumable walk over regions, coordinates, queries and pages."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator

from place_ingest.ingestion.models import Region, RegionalProcessingState, SearchContext

logger = logging.getLogger(__name__)


class RegionScanner:
    """Produces search contexts in priority order and moves the cursor on demand.

    Order: region priority, coordinate order, query order, page ascending. The
    cursor lives in a `RegionalProcessingState` so it can be checkpointed and
    restored at the exact position, including the offset inside a page.
    """

    def __init__(
        self,
        regions: tuple[Region, ...],
        *,
        max_pages: int,
        state: RegionalProcessingState | None = None,
    ) -> None:
        if max_pages <= 0:
            raise ValueError("max_pages must be a positive integer.")
        self.regions = tuple(sorted(regions, key=lambda region: region.priority))
        self.max_pages = max_pages
        self.state = state or RegionalProcessingState()
        self._by_code = {region.code: region for region in self.regions}
        self._sanitize_state()
        self._current_region()

    def current(self) -> SearchContext | None:
        """Current search context, or None when the pass is exhausted."""

        region = self._current_region()
        if region is None:
            return None
        coordinate_index = self.state.coordinate_index
        query_index = self.state.query_index
        return SearchContext(
            region=region,
            coordinate_index=coordinate_index,
            coordinate=region.coordinates[coordinate_index],
            query_index=query_index,
            query=region.queries[query_index],
            page=self.state.page,
        )

    def is_pass_complete(self) -> bool:
        return self._current_region() is None

    def advance_offset(self, count: int) -> None:
        self.state.item_offset += count

    def next_page(self) -> None:
        """Move to the next page; past `max_pages` moves to the next query."""

        self.state.page += 1
        self.state.item_offset = 0
        if self.state.page > self.max_pages:
            self.next_query()

    def next_query(self) -> None:
        """Move to the next query, wrapping to the next coordinate."""

        region = self._current_region()
        if region is None:
            return
        self.state.page = 1
        self.state.item_offset = 0
        self.state.query_index += 1
        if self.state.query_index < len(region.queries):
            return
        self.state.query_index = 0
        self.state.coordinate_index += 1
        if self.state.coordinate_index < len(region.coordinates):
            return
        self.next_region()

    def next_region(self) -> None:
        """Mark the current region completed and move to the next one by priority."""

        current = self.state.current_region
        if current is not None and current not in self.state.completed_regions:
            self.state.completed_regions.append(current)
            logger.info("Region %s completed (pass %d)", current, self.state.pass_number)
        self.state.current_region = None
        self._reset_position()
        self._current_region()

    def start_new_pass(self) -> None:
        """Begin the next pass from the first region; passes never end the job."""

        self.state.pass_number += 1
        self.state.skipped_total = 0
        self.state.completed_regions = []
        self.state.current_region = None
        self._reset_position()
        self._current_region()
        logger.info("Starting scan pass %d", self.state.pass_number)

    def iter_remaining(self) -> Iterator[SearchContext]:
        """Lazily list the remaining contexts of this pass without moving the cursor.

        Assumes every page is full, so each query yields `max_pages` pages.
        """

        probe = RegionScanner(
            self.regions,
            max_pages=self.max_pages,
            state=copy.deepcopy(self.state),
        )
        while True:
            context = probe.current()
            if context is None:
                return
            yield context
            probe.next_page()

    def _current_region(self) -> Region | None:
        while True:
            code = self.state.current_region
            if code is None:
                region = self._first_pending_region()
                if region is None:
                    return None
                self.state.current_region = region.code
                self._reset_position()
                code = region.code
            region = self._by_code.get(code)
            if region is not None and region.coordinates and region.queries:
                return region
            # unknown or empty region: count it as done
            if code not in self.state.completed_regions:
                self.state.completed_regions.append(code)
            self.state.current_region = None

    def _first_pending_region(self) -> Region | None:
        completed = set(self.state.completed_regions)
        for region in self.regions:
            if region.code not in completed:
                return region
        return None

    def _reset_position(self) -> None:
        self.state.coordinate_index = 0
        self.state.query_index = 0
        self.state.page = 1
        self.state.item_offset = 0

    def _sanitize_state(self) -> None:
        known = set(self._by_code)
        self.state.completed_regions = [
            code for code in self.state.completed_regions if code in known
        ]
        region = self._by_code.get(self.state.current_region or "")
        if region is None:
            if self.state.current_region is not None:
                logger.warning(
                    "Checkpointed region %s is not in the catalog; resuming from next region",
                    self.state.current_region,
                )
                self.state.current_region = None
                self._reset_position()
            return
        if (
            self.state.coordinate_index >= len(region.coordinates)
            or self.state.query_index >= len(region.queries)
            or self.state.page > self.max_pages
        ):
            logger.warning("Checkpoint cursor outside region %s bounds; resetting", region.code)
            self._reset_position()
