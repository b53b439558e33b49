"""Exclusion rules for places that should never be stored."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from place_ingest.config import DEFAULT_EXCLUDED_CATEGORIES, DEFAULT_EXCLUDED_KEYWORDS
from place_ingest.ingestion.models import PlaceRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FilterDecision:
    excluded: bool
    reason: str | None = None


class PlaceFilter:
    """Keyword and category based exclusion of adult venues, chains and services."""

    def __init__(
        self,
        *,
        excluded_keywords: tuple[str, ...] = DEFAULT_EXCLUDED_KEYWORDS,
        excluded_categories: tuple[str, ...] = DEFAULT_EXCLUDED_CATEGORIES,
    ) -> None:
        self._keyword_patterns = tuple(
            (keyword, _keyword_pattern(keyword)) for keyword in excluded_keywords if keyword
        )
        self._categories = frozenset(_normalize_category(item) for item in excluded_categories)

    def check(self, place: PlaceRecord) -> FilterDecision:
        """Decide whether the place is excluded.

        Any error while inspecting the record excludes it.
        """

        try:
            texts = (place.name, place.category or "", place.description or "")
            for keyword, pattern in self._keyword_patterns:
                if any(pattern.search(text) for text in texts):
                    return FilterDecision(excluded=True, reason=f"keyword:{keyword}")

            categories = {_normalize_category(item) for item in place.types}
            if place.category:
                categories.update(
                    _normalize_category(part) for part in re.split(r"[>/,]", place.category)
                )
            matched = sorted(categories & self._categories)
            if matched:
                return FilterDecision(excluded=True, reason=f"category:{matched[0]}")
        except (AttributeError, TypeError, re.error) as error:
            logger.warning("Excluding place %s after filter error: %s", place.place_id, error)
            return FilterDecision(excluded=True, reason="filter_error")
        return FilterDecision(excluded=False)

    def is_excluded(self, place: PlaceRecord) -> bool:
        return self.check(place).excluded


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    escaped = re.escape(keyword)
    if keyword.isascii():
        return re.compile(rf"\b{escaped}\b", re.IGNORECASE)
    return re.compile(escaped, re.IGNORECASE)


def _normalize_category(value: str) -> str:
    return re.sub(r"[\s\-]+", "_", value.strip().lower())
