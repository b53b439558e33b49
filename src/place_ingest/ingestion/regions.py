"""Region catalog scanned by the place-ingestion job."""

from __future__ import annotations

import json
from pathlib import Path

from place_ingest.ingestion.models import Coordinate, Region

_SEOUL_QUERIES = (
    "카페", "레스토랑", "음식점", "펍", "바", "베이커리", "디저트", "공원", "박물관", "미술관",
    "서점", "쇼핑몰", "영화관", "헬스장", "스파", "한식당", "중식당", "일식당", "양식당", "치킨집",
)  # fmt: skip
_GYEONGGI_QUERIES = (
    "카페", "레스토랑", "음식점", "공원", "박물관", "관광지", "펜션", "리조트", "놀이공원",
    "아울렛", "한식당", "치킨집", "베이커리",
)  # fmt: skip
_JEJU_QUERIES = (
    "카페", "레스토랑", "음식점", "관광지", "해변", "박물관", "펜션", "리조트", "흑돼지구이",
    "해산물", "감귤체험", "승마장", "골프장", "올레길",
)  # fmt: skip
_BUSAN_QUERIES = (
    "카페", "레스토랑", "음식점", "해변", "박물관", "시장", "자갈치시장", "해산물", "밀면",
    "돼지국밥", "씨앗호떡", "관광지", "온천", "사찰", "영화관",
)  # fmt: skip
_OTHER_QUERIES = (
    "카페", "레스토랑", "음식점", "관광지", "박물관", "공원", "시장", "한식당", "전통음식",
    "지역특산품", "펜션", "온천",
)  # fmt: skip


def _coords(*values: tuple[float, float, int, str]) -> tuple[Coordinate, ...]:
    return tuple(
        Coordinate(latitude=lat, longitude=lng, radius_m=radius, description=description)
        for lat, lng, radius, description in values
    )


DEFAULT_REGIONS: tuple[Region, ...] = (
    Region(
        code="SEOUL",
        name="서울특별시",
        priority=1,
        coordinates=_coords(
            (37.5665, 126.9780, 8000, "중구 (명동, 종로)"),
            (37.5172, 127.0473, 8000, "강남구"),
            (37.5440, 127.0557, 8000, "성동구 (성수동)"),
            (37.5219, 126.9895, 8000, "용산구 (이태원)"),
            (37.5502, 126.9224, 8000, "마포구 (홍대)"),
            (37.5465, 127.0949, 8000, "광진구 (건대)"),
            (37.5814, 127.0097, 8000, "종로구 (인사동)"),
            (37.4813, 127.0323, 8000, "서초구"),
            (37.5833, 127.0522, 8000, "성북구"),
            (37.5014, 127.1266, 8000, "송파구"),
        ),
        queries=_SEOUL_QUERIES,
    ),
    Region(
        code="GYEONGGI_DO",
        name="경기도",
        priority=2,
        coordinates=_coords(
            (37.4138, 127.5183, 10000, "성남시"),
            (37.2636, 127.0286, 10000, "수원시"),
            (37.6381, 127.0278, 10000, "고양시"),
            (37.3422, 126.7347, 10000, "안산시"),
            (37.4559, 126.7052, 10000, "부천시"),
            (37.6688, 126.7794, 10000, "파주시"),
            (37.2749, 127.0095, 10000, "용인시"),
        ),
        queries=_GYEONGGI_QUERIES,
    ),
    Region(
        code="JEJU",
        name="제주특별자치도",
        priority=3,
        coordinates=_coords(
            (33.4996, 126.5312, 15000, "제주시"),
            (33.2541, 126.5601, 15000, "서귀포시"),
            (33.5066, 126.4914, 10000, "애월읍"),
            (33.4734, 126.3402, 10000, "한림읍"),
            (33.3890, 126.9423, 10000, "표선면"),
            (33.2348, 126.4065, 10000, "안덕면"),
            (33.1862, 126.3051, 10000, "대정읍"),
        ),
        queries=_JEJU_QUERIES,
    ),
    Region(
        code="BUSAN",
        name="부산광역시",
        priority=4,
        coordinates=_coords(
            (35.1796, 129.0756, 8000, "부산진구"),
            (35.1547, 129.1186, 8000, "해운대구"),
            (35.0979, 129.0359, 8000, "중구"),
            (35.2332, 129.0820, 8000, "동래구"),
            (35.1280, 128.9430, 8000, "서구"),
            (35.2051, 129.2177, 8000, "기장군"),
        ),
        queries=_BUSAN_QUERIES,
    ),
    Region(
        code="OTHER_REGIONS",
        name="기타지역",
        priority=5,
        coordinates=_coords(
            (35.8714, 128.6014, 8000, "대구광역시"),
            (37.4563, 126.7052, 8000, "인천광역시"),
            (35.1595, 126.8526, 8000, "광주광역시"),
            (36.3504, 127.3845, 8000, "대전광역시"),
            (35.5384, 129.3114, 8000, "울산광역시"),
            (37.8813, 127.7298, 10000, "강원도 춘천시"),
            (36.6424, 127.4890, 10000, "충청북도 청주시"),
            (36.8151, 127.1139, 10000, "충청남도 천안시"),
            (35.8242, 127.1480, 10000, "전라북도 전주시"),
            (34.9506, 127.4876, 10000, "전라남도 순천시"),
            (36.0190, 129.3435, 10000, "경상북도 포항시"),
            (35.2281, 128.6811, 10000, "경상남도 창원시"),
        ),
        queries=_OTHER_QUERIES,
    ),
)


def load_regions(path: Path | None) -> tuple[Region, ...]:
    """Load a region catalog from JSON, or return the built-in one.

    Expected format::

        [{"code": "SEOUL", "name": "Seoul", "priority": 1,
          "coordinates": [{"latitude": 37.5, "longitude": 126.9,
                           "radius_m": 8000, "description": "Jung-gu"}],
          "queries": ["cafe"]}]
    """

    if path is None:
        return DEFAULT_REGIONS

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"Region catalog must be a JSON list: {path}")

    regions: list[Region] = []
    seen_codes: set[str] = set()
    for entry in payload:
        code = str(entry["code"]).strip()
        if not code or code in seen_codes:
            raise ValueError(f"Region code must be unique and non-empty: {code!r}")
        seen_codes.add(code)
        regions.append(
            Region(
                code=code,
                name=str(entry.get("name", code)),
                priority=int(entry.get("priority", len(regions) + 1)),
                coordinates=tuple(
                    Coordinate(
                        latitude=float(item["latitude"]),
                        longitude=float(item["longitude"]),
                        radius_m=int(item.get("radius_m", 5000)),
                        description=str(item.get("description", "")),
                    )
                    for item in entry.get("coordinates", [])
                ),
                queries=tuple(str(query) for query in entry.get("queries", [])),
            ),
        )
    return tuple(sorted(regions, key=lambda region: region.priority))
