"""httpx-backed search and enrichment clients."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from place_ingest import __version__
from place_ingest.ingestion.errors import (
    NotFoundError,
    SourceRequestError,
    TransientIOError,
    TransientKind,
    ValidationError,
)
from place_ingest.ingestion.models import (
    Coordinate,
    EnrichmentPayload,
    EnrichmentTarget,
    Region,
    SearchPage,
    WorkFlags,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = f"place-ingest/{__version__}"


class _JsonHttpClient:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def _get_json(self, url: str, params: dict[str, Any], *, target_id: str | None = None) -> Any:
        try:
            response = self._client.get(url, params=params)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s", url)
            raise TransientIOError(
                f"Timeout calling {url}: {error}",
                kind=TransientKind.SOCKET_TIMEOUT,
            ) from error
        except httpx.TransportError as error:
            logger.warning("Transport error calling %s: %s", url, error)
            raise TransientIOError(f"Transport error calling {url}: {error}") from error

        status_code = response.status_code
        if status_code == 404:  # noqa: PLR2004
            raise NotFoundError(f"Not found: {url}", target_id=target_id)
        if status_code == 429 or status_code >= 500:  # noqa: PLR2004
            raise TransientIOError(
                f"HTTP {status_code} from {url}",
                status_code=status_code,
            )
        if not response.is_success:
            raise SourceRequestError(f"HTTP {status_code} from {url}", status_code=status_code)
        try:
            return response.json()
        except ValueError as error:
            raise ValidationError(f"Malformed JSON from {url}: {error}") from error


class HttpSearchClient(_JsonHttpClient):
    """Search endpoint returning `{"items": [...], "is_last": bool}`."""

    def __init__(
        self,
        *,
        search_url: str,
        page_size: int,
        timeout_seconds: float,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, api_key=api_key, transport=transport)
        self.search_url = search_url
        self.page_size = page_size

    def search(self, region: Region, coordinate: Coordinate, query: str, page: int) -> SearchPage:
        payload = self._get_json(
            self.search_url,
            {
                "query": query,
                "region": region.code,
                "latitude": coordinate.latitude,
                "longitude": coordinate.longitude,
                "radius": coordinate.radius_m,
                "page": page,
                "size": self.page_size,
            },
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("items", []), list):
            raise ValidationError(f"Unexpected search response shape from {self.search_url}")
        items = payload.get("items", [])
        return SearchPage(
            items=items,
            is_last=bool(payload.get("is_last", len(items) < self.page_size)),
        )


class HttpEnrichmentClient(_JsonHttpClient):
    """Enrichment endpoint returning one section per requested kind."""

    def __init__(
        self,
        *,
        enrich_url: str,
        timeout_seconds: float,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, api_key=api_key, transport=transport)
        self.enrich_url = enrich_url

    def enrich(self, target: EnrichmentTarget, flags: WorkFlags) -> EnrichmentPayload:
        params: dict[str, Any] = {
            "id": target.target_id,
            "name": target.name,
            "sections": ",".join(kind.value for kind in flags.kinds()),
        }
        if target.address:
            params["address"] = target.address
        if target.latitude is not None and target.longitude is not None:
            params["latitude"] = target.latitude
            params["longitude"] = target.longitude

        payload = self._get_json(self.enrich_url, params, target_id=target.target_id)
        if not isinstance(payload, dict):
            raise ValidationError(f"Unexpected enrichment response shape from {self.enrich_url}")
        if payload.get("closed") or payload.get("not_found"):
            raise NotFoundError(
                f"Place {target.target_id} is closed or no longer listed",
                target_id=target.target_id,
            )
        return EnrichmentPayload(
            sections={kind: payload[kind.value] for kind in flags.kinds() if kind.value in payload},
        )

