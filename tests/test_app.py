"""HTTP surface tests with the coordinator mocked out."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from campsite_cache.errors import GeocodingError
from campsite_cache.models import (
    BoundingBox,
    Campsite,
    CampsiteMetadata,
    CampsiteRequest,
    CampsiteResponse,
    GeocodeResult,
)
from web.app import app, get_service


def _response(request: CampsiteRequest, *, status="success", error=None, error_code=None) -> CampsiteResponse:
    campsites = [] if status != "success" else [Campsite(id=1, type="campsite", name="Lakeside", lat=50.5, lng=10.5)]
    return CampsiteResponse(
        campsites=campsites,
        metadata=CampsiteMetadata(
            service="overpass",
            timestamp=1.0,
            query=request,
            results_count=len(campsites),
            cache_hit=False,
            query_duration=3.0,
        ),
        cached=False,
        bounding_box=request.bounds,
        status=status,
        error=error,
        error_code=error_code,
    )


@pytest.fixture()
def service():
    mock = MagicMock()
    mock.search = AsyncMock(side_effect=lambda request: _response(request))
    mock.geocoder.search = AsyncMock(return_value=[])
    mock.service_status = AsyncMock(return_value={"cache": {"campsites": 0, "queries": 0}})
    mock.health_check = AsyncMock(return_value=True)
    mock.prefetch_for_route = AsyncMock(return_value=[])
    return mock


@pytest.fixture()
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_campsites_by_bounds(client, service):
    response = client.get(
        "/campsites",
        params={
            "north": 51,
            "south": 50,
            "east": 11,
            "west": 10,
            "types": "campsite,aire",
            "amenities": "showers",
            "height": 3.2,
            "motorhome": "true",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["campsites"][0]["name"] == "Lakeside"

    request = service.search.await_args.args[0]
    assert request.bounds == BoundingBox(north=51, south=50, east=11, west=10)
    assert request.types == ("campsite", "aire")
    assert request.amenities == ("showers",)
    assert request.vehicle_filter.height == 3.2
    assert request.vehicle_filter.motorhome is True


def test_campsites_by_location(client, service):
    response = client.get("/campsites", params={"location": "Keswick"})
    assert response.status_code == 200
    request = service.search.await_args.args[0]
    assert request.location_query == "Keswick"
    assert request.bounds is None
    assert request.vehicle_filter is None


def test_campsites_requires_bounds_or_location(client, service):
    response = client.get("/campsites", params={"north": 51})
    assert response.status_code == 422
    service.search.assert_not_awaited()


def test_unknown_type_is_rejected(client):
    response = client.get("/campsites", params={"north": 51, "south": 50, "east": 11, "west": 10, "types": "hotel"})
    assert response.status_code == 422


@pytest.mark.parametrize(
    "error_code,status_code",
    [("invalid_bounds", 400), ("not_found", 404), ("rate_limit", 429), ("server", 503)],
)
def test_error_responses_map_to_http_status(client, service, error_code, status_code):
    service.search.side_effect = lambda request: _response(
        request, status="error", error="failed", error_code=error_code
    )
    response = client.get("/campsites", params={"north": 51, "south": 50, "east": 11, "west": 10})
    assert response.status_code == status_code
    assert response.json()["error_code"] == error_code


def test_geocode(client, service):
    service.geocoder.search.return_value = [
        GeocodeResult(display_name="Keswick, UK", lat=54.6, lng=-3.1, boundingbox=(), type="town", importance=0.5)
    ]
    response = client.get("/geocode", params={"q": "Keswick"})
    assert response.status_code == 200
    assert response.json()["results"][0]["lat"] == 54.6


def test_geocode_upstream_failure(client, service):
    service.geocoder.search.side_effect = GeocodingError("Geocoding HTTP error: 503", service="nominatim")
    response = client.get("/geocode", params={"q": "Keswick"})
    assert response.status_code == 502


def test_status_and_health(client, service):
    assert client.get("/status").json() == {"cache": {"campsites": 0, "queries": 0}}
    assert client.get("/health").json() == {"overpass": True}
    service.health_check.return_value = False
    assert client.get("/health").status_code == 503


def test_prefetch(client, service):
    request = CampsiteRequest(bounds=BoundingBox(north=51, south=50, east=11, west=10))
    service.prefetch_for_route.return_value = [_response(request), _response(request, status="error")]
    response = client.post("/prefetch", json={"coordinates": [[10.0, 50.0], [11.0, 51.0]]})
    assert response.json() == {"tiles": 2, "loaded": 1, "campsites": 1}
    service.prefetch_for_route.assert_awaited_once_with([[10.0, 50.0], [11.0, 51.0]])
