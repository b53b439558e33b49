import allure
import httpx
import pytest
from fakes import SEOUL

from place_ingest.ingestion.errors import (
    NotFoundError,
    SourceRequestError,
    TransientIOError,
    TransientKind,
    ValidationError,
)
from place_ingest.ingestion.models import EnrichmentKind, EnrichmentTarget, WorkFlags
from place_ingest.ingestion.sources.http import HttpEnrichmentClient, HttpSearchClient

pytestmark = [
    allure.epic("Place Ingestion"),
    allure.feature("HTTP Sources"),
]

SEARCH_URL = "https://places.test/api/search"
ENRICH_URL = "https://places.test/api/enrich"
TARGET = EnrichmentTarget(
    target_id="place-1",
    name="Onion Anguk",
    address="Gyedong-gil 5",
    latitude=37.58,
    longitude=126.98,
)


def _search_client(handler, *, page_size: int = 2) -> HttpSearchClient:
    return HttpSearchClient(
        search_url=SEARCH_URL,
        page_size=page_size,
        timeout_seconds=5.0,
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )


def _enrichment_client(handler) -> HttpEnrichmentClient:
    return HttpEnrichmentClient(
        enrich_url=ENRICH_URL,
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )


def test_search_sends_position_and_parses_page() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"items": [{"name": "Onion"}], "is_last": False})

    client = _search_client(handler)
    page = client.search(SEOUL, SEOUL.coordinates[0], "cafe", 3)
    client.close()

    assert page.items == [{"name": "Onion"}]
    assert page.is_last is False
    params = seen[0].url.params
    assert (params["query"], params["region"], params["page"], params["size"]) == (
        "cafe",
        "SEOUL",
        "3",
        "2",
    )
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert seen[0].headers["User-Agent"].startswith("place-ingest/")


def test_search_short_page_without_flag_is_last() -> None:
    client = _search_client(lambda request: httpx.Response(200, json={"items": [{"name": "A"}]}))

    page = client.search(SEOUL, SEOUL.coordinates[0], "cafe", 1)

    assert page.is_last is True


@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [
        (404, NotFoundError),
        (429, TransientIOError),
        (503, TransientIOError),
        (403, SourceRequestError),
    ],
)
def test_http_status_codes_map_to_error_taxonomy(status_code: int, error_type: type) -> None:
    client = _search_client(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(error_type):
        client.search(SEOUL, SEOUL.coordinates[0], "cafe", 1)


def test_timeout_is_a_socket_timeout_fault() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = _search_client(handler)

    with pytest.raises(TransientIOError) as error:
        client.search(SEOUL, SEOUL.coordinates[0], "cafe", 1)

    assert error.value.kind == TransientKind.SOCKET_TIMEOUT


def test_connection_error_is_a_remote_service_fault() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _search_client(handler)

    with pytest.raises(TransientIOError) as error:
        client.search(SEOUL, SEOUL.coordinates[0], "cafe", 1)

    assert error.value.kind == TransientKind.REMOTE_SERVICE


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"items": "oops"}),
    ],
)
def test_malformed_search_payload_is_a_validation_fault(response: httpx.Response) -> None:
    client = _search_client(lambda request: response)

    with pytest.raises(ValidationError):
        client.search(SEOUL, SEOUL.coordinates[0], "cafe", 1)


def test_enrich_returns_requested_sections_only() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"menus": [{"item": "latte"}], "reviews": [], "images": ["ignored.jpg"]},
        )

    client = _enrichment_client(handler)
    payload = client.enrich(TARGET, WorkFlags(menus=True, reviews=True))

    assert payload.sections == {
        EnrichmentKind.MENUS: [{"item": "latte"}],
        EnrichmentKind.REVIEWS: [],
    }
    params = seen[0].url.params
    assert params["sections"] == "menus,reviews"
    assert params["address"] == "Gyedong-gil 5"
    assert params["id"] == "place-1"


@pytest.mark.parametrize("body", [{"closed": True}, {"not_found": True}])
def test_enrich_closed_place_is_not_found(body: dict) -> None:
    client = _enrichment_client(lambda request: httpx.Response(200, json=body))

    with pytest.raises(NotFoundError) as error:
        client.enrich(TARGET, WorkFlags(menus=True))

    assert error.value.target_id == "place-1"


def test_enrich_404_carries_target_id() -> None:
    client = _enrichment_client(lambda request: httpx.Response(404))

    with pytest.raises(NotFoundError) as error:
        client.enrich(TARGET, WorkFlags(images=True))

    assert error.value.target_id == "place-1"
