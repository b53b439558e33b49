"""Normalization of raw search results into `PlaceRecord`."""

from __future__ import annotations

import hashlib
import html
import re
from typing import Any

from place_ingest.ingestion.errors import ValidationError
from place_ingest.ingestion.models import PlaceRecord, Region

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_SCALED_COORDINATE_THRESHOLD = 1_000


def clean_text(value: object) -> str | None:
    """Strip markup, unescape entities and collapse whitespace."""

    if value is None:
        return None
    text = html.unescape(_TAG_RE.sub("", str(value)))
    text = _SPACE_RE.sub(" ", text).strip()
    return text or None


def natural_key_for(*, name: str, address: str | None, latitude: float, longitude: float) -> str:
    """Case- and whitespace-insensitive identity of a place."""

    location = address if address else f"{latitude:.5f},{longitude:.5f}"
    return f"{_normalize_key_part(name)}|{_normalize_key_part(location)}"


def place_id_for(natural_key: str) -> str:
    return hashlib.sha256(natural_key.encode("utf-8")).hexdigest()[:32]


def normalize_place(raw: dict[str, Any], *, region: Region) -> PlaceRecord:
    """Validate one raw search item; raise `ValidationError` when unusable."""

    if not isinstance(raw, dict):
        raise ValidationError(f"Search item must be an object, got {type(raw).__name__}")

    name = clean_text(raw.get("name") or raw.get("title"))
    if not name:
        raise ValidationError("Place name is missing", field_name="name")

    latitude = _parse_coordinate(raw, ("latitude", "lat", "mapy"), "latitude", limit=90.0)
    longitude = _parse_coordinate(raw, ("longitude", "lng", "mapx"), "longitude", limit=180.0)

    address = clean_text(raw.get("address"))
    road_address = clean_text(raw.get("road_address") or raw.get("roadAddress"))
    natural_key = natural_key_for(
        name=name,
        address=road_address or address,
        latitude=latitude,
        longitude=longitude,
    )
    raw_types = raw.get("types") or ()
    if isinstance(raw_types, str):
        raw_types = (raw_types,)
    return PlaceRecord(
        place_id=place_id_for(natural_key),
        natural_key=natural_key,
        name=name,
        region=region.code,
        latitude=latitude,
        longitude=longitude,
        category=clean_text(raw.get("category")),
        address=address,
        road_address=road_address,
        description=clean_text(raw.get("description")),
        types=tuple(str(item).strip().lower() for item in raw_types if str(item).strip()),
        source_payload=dict(raw),
    )


def _parse_coordinate(
    raw: dict[str, Any],
    keys: tuple[str, ...],
    field_name: str,
    *,
    limit: float,
) -> float:
    value = next((raw[key] for key in keys if raw.get(key) not in (None, "")), None)
    if value is None:
        raise ValidationError(f"Place {field_name} is missing", field_name=field_name)
    try:
        parsed = float(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(
            f"Place {field_name} is not a number: {value!r}",
            field_name=field_name,
        ) from error
    if abs(parsed) > _SCALED_COORDINATE_THRESHOLD:
        # integer degrees x 1e7, as returned by local search APIs
        parsed = parsed / 10_000_000
    if not -limit <= parsed <= limit:
        raise ValidationError(f"Place {field_name} out of range: {value!r}", field_name=field_name)
    return parsed


def _normalize_key_part(value: str) -> str:
    return _SPACE_RE.sub(" ", value).strip().lower()
