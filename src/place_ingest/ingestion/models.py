"""Domain models for place ingestion."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MAX_STATE_ERRORS = 50


class ExecutionStatus(str, Enum):
    """Outcome of the last chunk recorded in the job checkpoint."""

    RUNNING = "running"
    COMPLETED = "completed"
    PASS_COMPLETED = "pass_completed"
    FAILED = "failed"


class EnrichmentKind(str, Enum):
    MENUS = "menus"
    IMAGES = "images"
    REVIEWS = "reviews"


@dataclass(slots=True, frozen=True)
class WorkFlags:
    """Which enrichment sections to refresh for one place."""

    menus: bool = False
    images: bool = False
    reviews: bool = False

    @classmethod
    def from_names(cls, names: tuple[str, ...] | list[str]) -> WorkFlags:
        normalized = {name.strip().lower() for name in names}
        unknown = normalized - {kind.value for kind in EnrichmentKind}
        if unknown:
            raise ValueError(f"Unknown work flags: {', '.join(sorted(unknown))}")
        return cls(
            menus=EnrichmentKind.MENUS.value in normalized,
            images=EnrichmentKind.IMAGES.value in normalized,
            reviews=EnrichmentKind.REVIEWS.value in normalized,
        )

    @classmethod
    def all(cls) -> WorkFlags:
        return cls(menus=True, images=True, reviews=True)

    def kinds(self) -> tuple[EnrichmentKind, ...]:
        selected: list[EnrichmentKind] = []
        if self.menus:
            selected.append(EnrichmentKind.MENUS)
        if self.images:
            selected.append(EnrichmentKind.IMAGES)
        if self.reviews:
            selected.append(EnrichmentKind.REVIEWS)
        return tuple(selected)

    def is_empty(self) -> bool:
        return not (self.menus or self.images or self.reviews)


@dataclass(slots=True, frozen=True)
class Coordinate:
    """Search center inside a region."""

    latitude: float
    longitude: float
    radius_m: int
    description: str


@dataclass(slots=True, frozen=True)
class Region:
    """Search region with its coordinates and queries, processed by priority."""

    code: str
    name: str
    priority: int
    coordinates: tuple[Coordinate, ...]
    queries: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class SearchContext:
    """One (region, coordinate, query, page) position of the scan."""

    region: Region
    coordinate_index: int
    coordinate: Coordinate
    query_index: int
    query: str
    page: int


@dataclass(slots=True)
class SearchPage:
    """One page of raw candidate records returned by a search collaborator."""

    items: list[dict[str, Any]]
    is_last: bool = False


@dataclass(slots=True, frozen=True)
class EnrichmentTarget:
    """Identity plus lookup hints for one enrichment call."""

    target_id: str
    name: str
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(slots=True)
class EnrichmentPayload:
    """Opaque enrichment sections keyed by kind."""

    sections: dict[EnrichmentKind, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlaceRecord:
    """Normalized, validated place ready for persistence."""

    place_id: str
    natural_key: str
    name: str
    region: str
    latitude: float
    longitude: float
    category: str | None = None
    address: str | None = None
    road_address: str | None = None
    description: str | None = None
    types: tuple[str, ...] = ()
    source_payload: dict[str, Any] = field(default_factory=dict)

    def target(self) -> EnrichmentTarget:
        return EnrichmentTarget(
            target_id=self.place_id,
            name=self.name,
            address=self.road_address or self.address,
            latitude=self.latitude,
            longitude=self.longitude,
        )


@dataclass(slots=True)
class PlaceView:
    """Stored place as read back from the repository."""

    place_id: str
    natural_key: str
    name: str
    region: str
    category: str | None
    address: str | None
    road_address: str | None
    latitude: float
    longitude: float
    created_at: datetime
    updated_at: datetime

    def target(self) -> EnrichmentTarget:
        return EnrichmentTarget(
            target_id=self.place_id,
            name=self.name,
            address=self.road_address or self.address,
            latitude=self.latitude,
            longitude=self.longitude,
        )


@dataclass(slots=True)
class RegionalProcessingState:
    """Resumable scanner cursor, mirrored into the job checkpoint."""

    current_region: str | None = None
    completed_regions: list[str] = field(default_factory=list)
    coordinate_index: int = 0
    query_index: int = 0
    page: int = 1
    item_offset: int = 0
    pass_number: int = 1
    total_processed: int = 0
    skipped_total: int = 0
    errors: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors.append(message)
        if len(self.errors) > MAX_STATE_ERRORS:
            del self.errors[: len(self.errors) - MAX_STATE_ERRORS]

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_region": self.current_region,
            "completed_regions": list(self.completed_regions),
            "coordinate_index": self.coordinate_index,
            "query_index": self.query_index,
            "page": self.page,
            "item_offset": self.item_offset,
            "pass_number": self.pass_number,
            "total_processed": self.total_processed,
            "skipped_total": self.skipped_total,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RegionalProcessingState:
        current_region = payload.get("current_region")
        return cls(
            current_region=str(current_region) if current_region is not None else None,
            completed_regions=[str(code) for code in payload.get("completed_regions", [])],
            coordinate_index=int(payload.get("coordinate_index", 0)),
            query_index=int(payload.get("query_index", 0)),
            page=max(1, int(payload.get("page", 1))),
            item_offset=max(0, int(payload.get("item_offset", 0))),
            pass_number=max(1, int(payload.get("pass_number", 1))),
            total_processed=int(payload.get("total_processed", 0)),
            skipped_total=max(0, int(payload.get("skipped_total", 0))),
            errors=[str(error) for error in payload.get("errors", [])],
        )


@dataclass(slots=True)
class JobCheckpoint:
    """Persisted progress marker of one named job."""

    job_name: str
    last_processed_page: int = 0
    last_processed_timestamp: datetime | None = None
    total_processed_records: int = 0
    last_execution_status: ExecutionStatus | None = None
    regional_state: RegionalProcessingState | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ChunkWrite:
    """Side effects of one chunk, applied in a single transaction."""

    upserts: list[PlaceRecord] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)
    enrichments: dict[str, EnrichmentPayload] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkResult:
    """Counters of one `ChunkPipeline.process` call."""

    read: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0
    deleted: int = 0
    pages_committed: int = 0
    end_of_pass: bool = False
    errors: list[str] = field(default_factory=list)
