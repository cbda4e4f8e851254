"""Coordinator for campsite queries: cache, dedupe, overlap planning and tiers."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Sequence

import httpx

from .client import OverpassClient
from .config import Settings, load_settings
from .dedupe import InFlightRequests
from .errors import BoundsValidationError, CampsiteError, StoreError
from .geocoding import NominatimGeocoder
from .geometry import (
    bounds_around,
    contains,
    dedupe_by_id,
    query_key,
    route_bounds,
    shrink_to_loaded,
    tile_bounds,
    validate_bounds,
)
from .models import (
    BoundingBox,
    Campsite,
    CampsiteMetadata,
    CampsiteRequest,
    CampsiteResponse,
)
from .overpass import HEALTH_CHECK_QUERY, Priority, build_query, parse_elements, query_statements
from .planner import FetchPlan, LoadedRegion
from .ratelimit import MinIntervalThrottle, SlidingWindowRateLimiter
from .scoring import filter_and_score
from .store import CampsiteStore

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Unable to load campsites. The server may be busy, try again in a moment."
ROUTE_TILE_SPAN = 4.5
ROUTE_TYPES: tuple[str, ...] = ("campsite", "caravan_site")
_PLACEHOLDER_NAME = re.compile(r"^(campsite|caravan_site|aire|parking)\s+\d+$", re.IGNORECASE)
_TYPE_LABELS = {"aire": "Aire", "caravan_site": "Caravan site"}


@dataclass(slots=True)
class _Loaded:
    """Unfiltered campsites for one query key, shared by deduplicated callers."""

    campsites: list[Campsite]
    cache_hit: bool
    timestamp: float
    service: str = "overpass"


class CampsiteService:
    """Answers bounds or place-name queries for campsites.

    Owns the persistent store, the Overpass client and its rate limiter, the
    geocoder, the in-flight table and the last-loaded snapshot. All of it is
    meant to be used from a single event loop.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: CampsiteStore | None = None,
        client: OverpassClient | None = None,
        geocoder: NominatimGeocoder | None = None,
        clock: Callable[[], float] = time.time,
        overpass_transport: httpx.AsyncBaseTransport | None = None,
        nominatim_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        s = self.settings
        self._clock = clock
        self.store = store or CampsiteStore(s.cache_dir, clock=clock)
        self.client = client or OverpassClient(
            endpoints=s.overpass_urls,
            user_agent=s.user_agent,
            timeout=s.request_timeout,
            retries=s.retries,
            retry_base_delay=s.retry_base_delay,
            rate_limiter=SlidingWindowRateLimiter(s.rate_limit_requests, s.rate_limit_window),
            transport=overpass_transport,
        )
        self.geocoder = geocoder or NominatimGeocoder(
            base_url=s.nominatim_url,
            user_agent=s.user_agent,
            countrycodes=s.countrycodes,
            throttle=MinIntervalThrottle(s.geocode_interval),
            transport=nominatim_transport,
        )
        self.snapshot = LoadedRegion()
        self._in_flight: InFlightRequests[_Loaded] = InFlightRequests()
        self._background: set[asyncio.Task[Any]] = set()
        self._eviction_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "CampsiteService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ---- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Evict expired entries once and start the periodic sweep."""
        await self.evict_expired()
        if self._eviction_task is None and self.settings.eviction_interval > 0:
            self._eviction_task = asyncio.create_task(self._eviction_loop())

    async def aclose(self) -> None:
        tasks = list(self._background)
        if self._eviction_task is not None:
            tasks.append(self._eviction_task)
            self._eviction_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.client.aclose()
        await self.geocoder.aclose()

    async def join_background(self) -> None:
        """Wait for scheduled secondary-tier fetches to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def evict_expired(self) -> int:
        try:
            return await self.store.evict_older_than(self.settings.cache_max_age)
        except StoreError as exc:
            logger.warning("Cache eviction failed: %s", exc)
            return 0

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.eviction_interval)
            await self.evict_expired()

    # ---- queries ---------------------------------------------------------

    async def search(self, request: CampsiteRequest) -> CampsiteResponse:
        """Answer *request*; expected failures come back as ``status="error"``."""
        started = time.perf_counter()
        if request.location_query:
            return await self._search_by_location(request, started)

        try:
            validate_bounds(request.bounds, max_span=self.settings.max_span)
        except BoundsValidationError as exc:
            return self._error_response(request, started, str(exc), exc.code)

        assert request.bounds is not None
        key = query_key(request.bounds, request.types, request.amenities)
        try:
            loaded = await self._in_flight.run(key, lambda: self._load(request, key))
        except CampsiteError as exc:
            return self._error_response(request, started, BUSY_MESSAGE, exc.code)
        return self._respond(request, loaded, started)

    async def _search_by_location(self, request: CampsiteRequest, started: float) -> CampsiteResponse:
        assert request.location_query is not None
        try:
            place = await self.geocoder.geocode(request.location_query)
        except CampsiteError as exc:
            logger.warning("Location search for '%s' failed: %s", request.location_query, exc)
            return self._error_response(request, started, f"Location search failed: {exc}", exc.code)

        if place is None:
            return self._error_response(
                request, started, f"Could not find location: {request.location_query}", "not_found"
            )

        bounds = bounds_around(
            place.lat, place.lng, self.settings.location_radius_km, max_span=self.settings.max_span
        )
        result = await self.search(replace(request, bounds=bounds, location_query=None))
        metadata = replace(result.metadata, geocoded_location=place, query=request)
        return replace(result, metadata=metadata)

    async def _load(self, request: CampsiteRequest, key: str) -> _Loaded:
        """Produce the unfiltered campsites for *key*; raises when nothing can be served."""
        assert request.bounds is not None
        cached = await self._cached_load(request.bounds, key)
        if cached is not None:
            async with self.snapshot.lock:
                self.snapshot.replace(request.bounds, cached.campsites)
            logger.info("Cache hit for %s (%d campsites)", key, len(cached.campsites))
            return cached

        try:
            return await self._fetch_region(request, key)
        except CampsiteError as exc:
            logger.warning("Campsite fetch for %s failed: %s", key, exc)
            stale = await self._cached_load(request.bounds, key, allow_stale=True)
            if stale is None:
                raise
            logger.info("Serving stale cache for %s", key)
            return stale

    async def _fetch_region(self, request: CampsiteRequest, key: str) -> _Loaded:
        bounds = request.bounds
        assert bounds is not None
        async with self.snapshot.lock:
            plan = self.snapshot.plan(
                bounds,
                threshold=self.settings.overlap_threshold,
                min_span=self.settings.gap_min_span,
            )

        budget = self.client.rate_limiter.remaining
        if not plan.full and len(plan.gaps) > max(budget, 1):
            # Strips that cannot all fit in the remaining budget are fetched as one box.
            logger.info("%d gaps exceed the remaining budget of %d, fetching %s whole", len(plan.gaps), budget, key)
            plan = FetchPlan(full=True, ratio=plan.ratio)
        if not plan.full:
            return await self._load_with_gaps(request, key, plan)

        campsites = await self._fetch_tier(bounds, request.types, Priority.PRIMARY)
        async with self.snapshot.lock:
            self.snapshot.replace(bounds, campsites)
        logger.info("Fetched %d campsites for %s", len(campsites), key)
        await self._remember(key, bounds, campsites)
        self._schedule_secondary(request.types, bounds)
        return _Loaded(campsites, cache_hit=False, timestamp=self._clock())

    async def _load_with_gaps(self, request: CampsiteRequest, key: str, plan: FetchPlan) -> _Loaded:
        """Reuse the snapshot and fetch only the uncovered strips.

        The snapshot advances to the part of the request that is actually
        covered: sides whose strip failed stay at the old loaded edge.
        """
        bounds = request.bounds
        assert bounds is not None and plan.loaded is not None
        outcomes = await asyncio.gather(
            *(self._fetch_tier(gap, request.types, Priority.PRIMARY) for gap in plan.gaps),
            return_exceptions=True,
        )
        fetched: list[Campsite] = []
        loaded_gaps: list[BoundingBox] = []
        failed_gaps: list[BoundingBox] = []
        for gap, outcome in zip(plan.gaps, outcomes):
            if isinstance(outcome, CampsiteError):
                logger.warning("Gap fetch %s failed, continuing without it: %s", gap, outcome)
                failed_gaps.append(gap)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            fetched.extend(outcome)
            loaded_gaps.append(gap)

        combined = dedupe_by_id([*plan.reusable, *fetched])
        covered = shrink_to_loaded(bounds, plan.loaded, failed_gaps)
        async with self.snapshot.lock:
            self.snapshot.replace(covered, [c for c in combined if contains(covered, c.lat, c.lng)])
        logger.info(
            "Overlap %.0f%%: reused %d, fetched %d from %d/%d gaps",
            plan.ratio * 100,
            len(plan.reusable),
            len(fetched),
            len(loaded_gaps),
            len(plan.gaps),
        )

        if failed_gaps:
            await self._store_quietly(fetched)
        else:
            await self._remember(key, bounds, fetched)
        for gap in loaded_gaps:
            self._schedule_secondary(request.types, gap)
        return _Loaded(combined, cache_hit=False, timestamp=self._clock())

    async def _fetch_tier(
        self,
        bounds: BoundingBox,
        types: Sequence[str],
        priority: Priority,
    ) -> list[Campsite]:
        """Fetch and parse one tier for *bounds*, unfiltered, at the fixed upstream cap."""
        query = build_query(bounds, types, priority, max_span=self.settings.max_span)
        if query is None:
            return []
        payload = await self.client.execute(query)
        return parse_elements(payload, now=self._clock())

    def _schedule_secondary(self, types: Sequence[str], bounds: BoundingBox) -> None:
        if self.settings.secondary_delay < 0:
            return
        if not query_statements(bounds, types, Priority.SECONDARY):
            return
        task = asyncio.create_task(self._fetch_secondary(types, bounds))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _fetch_secondary(self, types: Sequence[str], bounds: BoundingBox) -> None:
        await asyncio.sleep(self.settings.secondary_delay)
        try:
            campsites = await self._fetch_tier(bounds, types, Priority.SECONDARY)
        except CampsiteError as exc:
            # Enrichment only; the caller already has its primary result.
            logger.debug("Secondary fetch for %s discarded: %s", bounds, exc)
            return
        await self._store_quietly(campsites)
        async with self.snapshot.lock:
            size = self.snapshot.merge(campsites)
        logger.info("Merged %d secondary campsites (snapshot now %d)", len(campsites), size)

    # ---- cache helpers ---------------------------------------------------

    async def _cached_load(self, bounds: BoundingBox, key: str, *, allow_stale: bool = False) -> _Loaded | None:
        try:
            metadata = await self.store.get_query_metadata(key)
            if metadata is None:
                return None
            timestamp = float(metadata["timestamp"])
            if not allow_stale and self._clock() - timestamp >= self.settings.cache_max_age:
                return None
            campsites = await self.store.query_by_bounds(bounds)
        except StoreError as exc:
            logger.warning("Cache lookup failed, treating as a miss: %s", exc)
            return None

        if not campsites:
            return None
        return _Loaded(
            campsites,
            cache_hit=True,
            timestamp=timestamp,
            service=metadata.get("service") or "overpass",
        )

    async def _remember(self, key: str, bounds: BoundingBox, campsites: Iterable[Campsite]) -> None:
        try:
            await self.store.upsert(campsites)
            await self.store.set_query_timestamp(key, self._clock(), service="overpass", bounds=bounds)
        except StoreError as exc:
            logger.warning("Campsite cache write failed, continuing without it: %s", exc)

    async def _store_quietly(self, campsites: Iterable[Campsite]) -> None:
        try:
            await self.store.upsert(campsites)
        except StoreError as exc:
            logger.warning("Campsite cache write failed, continuing without it: %s", exc)

    # ---- responses -------------------------------------------------------

    def _respond(self, request: CampsiteRequest, loaded: _Loaded, started: float) -> CampsiteResponse:
        """Apply this caller's filters and cap to a shared load."""
        assert request.bounds is not None
        ranked = filter_and_score(
            loaded.campsites,
            request.bounds,
            vehicle=request.vehicle_filter,
            amenities=request.amenities,
        )[: request.max_results]
        return CampsiteResponse(
            campsites=ranked,
            metadata=CampsiteMetadata(
                service=loaded.service,
                timestamp=loaded.timestamp,
                query=request,
                results_count=len(ranked),
                cache_hit=loaded.cache_hit,
                query_duration=_elapsed_ms(started),
            ),
            cached=loaded.cache_hit,
            bounding_box=request.bounds,
        )

    def _error_response(
        self,
        request: CampsiteRequest,
        started: float,
        message: str,
        code: str,
    ) -> CampsiteResponse:
        return CampsiteResponse(
            campsites=[],
            metadata=CampsiteMetadata(
                service="overpass",
                timestamp=self._clock(),
                query=request,
                results_count=0,
                cache_hit=False,
                query_duration=_elapsed_ms(started),
            ),
            cached=False,
            bounding_box=request.bounds,
            status="error",
            error=message,
            error_code=code,
        )

    # ---- extras ----------------------------------------------------------

    async def prefetch_for_route(self, coordinates: Sequence[Sequence[float]]) -> list[CampsiteResponse]:
        """Warm the cache along a route given as ``(lng, lat)`` pairs."""
        bounds = route_bounds(coordinates)
        if bounds is None:
            return []
        tiles = tile_bounds(bounds, max_span=min(ROUTE_TILE_SPAN, self.settings.max_span))
        logger.info("Prefetching campsites for route across %d tiles", len(tiles))
        return list(
            await asyncio.gather(
                *(self.search(CampsiteRequest(bounds=tile, types=ROUTE_TYPES)) for tile in tiles)
            )
        )

    async def enrich_with_location(self, campsite: Campsite) -> Campsite:
        """Name and address placeholder campsites from a reverse geocode."""
        unnamed = not campsite.name or bool(_PLACEHOLDER_NAME.match(campsite.name))
        no_address = not campsite.address and not campsite.structured_address.city
        if not unnamed and not no_address:
            return campsite

        try:
            location = await self.geocoder.reverse(campsite.lat, campsite.lng)
        except CampsiteError as exc:
            logger.debug("Reverse geocode for campsite %s failed: %s", campsite.id, exc)
            return campsite
        if not location or not location.get("display_name"):
            return campsite

        display_name = location["display_name"]
        changes: dict[str, Any] = {}
        if unnamed:
            label = _TYPE_LABELS.get(campsite.type, "Campsite")
            changes["name"] = f"{label} near {display_name}"
        if no_address:
            changes["address"] = display_name
            if not campsite.structured_address.city:
                changes["structured_address"] = replace(
                    campsite.structured_address,
                    city=location.get("city"),
                    country=location.get("country"),
                )
        return replace(campsite, **changes)

    async def refresh_cache(self, bounds: BoundingBox, *, types: Sequence[str] | None = None) -> int:
        """Re-fetch a region regardless of freshness; returns the number stored."""
        request = CampsiteRequest(bounds=bounds) if types is None else CampsiteRequest(bounds=bounds, types=tuple(types))
        validate_bounds(bounds, max_span=self.settings.max_span)
        campsites = await self._fetch_tier(bounds, request.types, Priority.PRIMARY)
        await self._remember(query_key(bounds, request.types, request.amenities), bounds, campsites)
        self._schedule_secondary(request.types, bounds)
        return len(campsites)

    async def health_check(self) -> bool:
        try:
            await self.client.execute(HEALTH_CHECK_QUERY, timeout=5.0)
        except CampsiteError as exc:
            logger.error("Overpass API health check failed: %s", exc)
            return False
        return True

    async def service_status(self) -> dict[str, Any]:
        limiter = self.client.rate_limiter
        try:
            cache = await self.store.stats()
        except StoreError as exc:
            logger.warning("Cache stats unavailable: %s", exc)
            cache = {"campsites": 0, "queries": 0}
        snapshot = self.snapshot.bounds
        return {
            "primary": {
                "name": "Overpass API",
                "endpoints": list(self.client.endpoints),
                "cache": "file" if self.store.persistent else "memory",
            },
            "rate_limit": {"remaining": limiter.remaining, "reset_in": limiter.reset_in},
            "cache": cache,
            "in_flight": len(self._in_flight),
            "background_tasks": len(self._background),
            "last_loaded": {
                "bounds": snapshot.to_dict() if snapshot else None,
                "campsites": len(self.snapshot.campsites),
            },
        }


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
