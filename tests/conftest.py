"""Shared fixtures: a scripted Overpass/Nominatim upstream and a fake clock."""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import replace
from typing import Any, Callable

import httpx
import pytest

from campsite_cache.config import Settings
from campsite_cache.models import BoundingBox
from campsite_cache.service import CampsiteService

BBOX_PATTERN = re.compile(r"\(([-\d.]+),([-\d.]+),([-\d.]+),([-\d.]+)\)")


def overpass_element(element_id: int, lat: float, lng: float, **tags: str) -> dict[str, Any]:
    tags.setdefault("tourism", "camp_site")
    return {"type": "node", "id": element_id, "lat": lat, "lon": lng, "tags": tags}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class OverpassStub:
    """Answers Overpass POSTs from a fixed element list, filtered by the query bbox.

    Relation (secondary tier) queries are answered from ``secondary``.
    Queued ``failures`` are returned before any successful response. While
    ``gate`` is set to an unset event, every request waits on it.
    """

    def __init__(
        self,
        elements: list[dict[str, Any]] | None = None,
        *,
        secondary: list[dict[str, Any]] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.elements = list(elements or [])
        self.secondary = list(secondary or [])
        self.delay = delay
        self.failures: list[httpx.Response | Exception] = []
        self.secondary_failure: httpx.Response | None = None
        self.gate: asyncio.Event | None = None
        self.queries: list[str] = []
        self.urls: list[str] = []

    @property
    def primary_queries(self) -> list[str]:
        return [q for q in self.queries if "relation[" not in q and "out count" not in q]

    @property
    def secondary_queries(self) -> list[str]:
        return [q for q in self.queries if "relation[" in q]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        query = request.content.decode("utf-8")
        self.queries.append(query)
        self.urls.append(str(request.url))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure
        if "out count" in query:
            return httpx.Response(200, json={"elements": [{"type": "count", "tags": {"total": "0"}}]})

        if "relation[" in query and self.secondary_failure is not None:
            return self.secondary_failure
        source = self.secondary if "relation[" in query else self.elements
        match = BBOX_PATTERN.search(query)
        if match is None:
            return httpx.Response(200, json={"elements": source})
        south, west, north, east = (float(v) for v in match.groups())
        inside = [
            e for e in source if south <= e["lat"] <= north and west <= e["lon"] <= east
        ]
        return httpx.Response(200, json={"version": 0.6, "elements": inside})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class NominatimStub:
    def __init__(self, results: list[dict[str, Any]] | None = None, reverse: dict[str, Any] | None = None) -> None:
        self.results = list(results or [])
        self.reverse = reverse
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="busy")
        if request.url.path.endswith("/reverse"):
            return httpx.Response(200, content=json.dumps(self.reverse or {}), headers={"content-type": "text/plain"})
        return httpx.Response(200, json=self.results)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def region_a() -> BoundingBox:
    return BoundingBox(north=51.0, south=50.0, east=11.0, west=10.0)


@pytest.fixture
def sample_elements() -> list[dict[str, Any]]:
    return [
        overpass_element(
            1,
            50.5,
            10.5,
            name="Central Camping",
            drinking_water="yes",
            electricity="yes",
            shower="yes",
            toilets="yes",
            phone="+49 123",
            opening_hours="Apr-Oct",
            maxheight="3.0",
        ),
        overpass_element(2, 50.2, 10.2, name="Riverside", website="https://riverside.example"),
        overpass_element(3, 50.9, 10.9),
        overpass_element(4, 50.6, 10.4, name="Stellplatz Nord", tourism="", amenity="parking", motorhome="yes"),
        # North of region A, inside the shifted region.
        overpass_element(5, 51.1, 10.5, name="Hilltop"),
    ]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        retries=0,
        retry_base_delay=0.0,
        rate_limit_requests=100,
        rate_limit_window=1.0,
        secondary_delay=-1.0,
        eviction_interval=0,
        geocode_interval=0.0,
    )


@pytest.fixture
def make_service(test_settings: Settings, clock: FakeClock) -> Callable[..., CampsiteService]:
    def factory(
        overpass: OverpassStub,
        nominatim: NominatimStub | None = None,
        **overrides: Any,
    ) -> CampsiteService:
        settings = replace(test_settings, **overrides)
        return CampsiteService(
            settings,
            clock=clock,
            overpass_transport=overpass.transport,
            nominatim_transport=(nominatim or NominatimStub()).transport,
        )

    return factory
