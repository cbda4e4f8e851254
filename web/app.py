"""FastAPI wrapper exposing campsite search, geocoding and service status."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from campsite_cache.config import load_settings
from campsite_cache.errors import CampsiteError
from campsite_cache.models import (
    AMENITY_NAMES,
    CAMPSITE_TYPES,
    DEFAULT_MAX_RESULTS,
    DEFAULT_TYPES,
    BoundingBox,
    CampsiteRequest,
    VehicleFilter,
)
from campsite_cache.service import CampsiteService

_settings = load_settings()
logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(levelname)s %(message)s",
)
logging.getLogger("httpx").setLevel(logging.INFO)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

ERROR_STATUS = {"invalid_bounds": 400, "not_found": 404, "rate_limit": 429}

app = FastAPI(title="Campsite Cache")

_service: CampsiteService | None = None


def get_service() -> CampsiteService:
    if _service is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return _service


@app.on_event("startup")
async def _on_startup() -> None:
    global _service
    if _service is None:
        _service = CampsiteService(_settings)
        await _service.start()
        logger.info("Campsite service started (endpoints=%s)", ",".join(_settings.overpass_urls))


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None


def _split(value: str, allowed: tuple[str, ...], label: str) -> tuple[str, ...]:
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    unknown = [item for item in items if item not in allowed]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown {label}: {', '.join(unknown)}")
    return items


@app.get("/campsites")
async def campsites(
    north: Optional[float] = None,
    south: Optional[float] = None,
    east: Optional[float] = None,
    west: Optional[float] = None,
    location: Optional[str] = None,
    types: str = ",".join(DEFAULT_TYPES),
    amenities: str = "",
    height: Optional[float] = None,
    length: Optional[float] = None,
    weight: Optional[float] = None,
    motorhome: bool = False,
    caravan: bool = False,
    max_results: int = Query(DEFAULT_MAX_RESULTS, ge=1),
    service: CampsiteService = Depends(get_service),
):
    bounds = None
    if not location:
        if None in (north, south, east, west):
            raise HTTPException(status_code=422, detail="Provide north, south, east and west, or location")
        bounds = BoundingBox(north=north, south=south, east=east, west=west)

    vehicle = None
    if any((height, length, weight, motorhome, caravan)):
        vehicle = VehicleFilter(height=height, length=length, weight=weight, motorhome=motorhome, caravan=caravan)

    request = CampsiteRequest(
        bounds=bounds,
        types=_split(types, CAMPSITE_TYPES, "type") or DEFAULT_TYPES,
        amenities=_split(amenities, AMENITY_NAMES, "amenity"),
        max_results=max_results,
        vehicle_filter=vehicle,
        location_query=location or None,
    )
    response = await service.search(request)
    if response.status != "success":
        status_code = ERROR_STATUS.get(response.error_code or "", 503)
        return JSONResponse(response.to_dict(), status_code=status_code)
    return response.to_dict()


@app.get("/geocode")
async def geocode(
    q: str = Query(..., min_length=1),
    limit: int = Query(5, ge=1, le=20),
    service: CampsiteService = Depends(get_service),
):
    try:
        results = await service.geocoder.search(q, limit=limit)
    except CampsiteError as exc:
        logger.warning("Geocode for '%s' failed: %s", q, exc)
        raise HTTPException(status_code=502, detail=str(exc))
    return {"query": q, "results": [asdict(result) for result in results]}


@app.post("/prefetch")
async def prefetch(
    coordinates: list[list[float]] = Body(..., embed=True),
    service: CampsiteService = Depends(get_service),
):
    """Warm the cache along a route of ``[lng, lat]`` points."""
    responses = await service.prefetch_for_route(coordinates)
    return {
        "tiles": len(responses),
        "loaded": sum(1 for response in responses if response.status == "success"),
        "campsites": sum(len(response.campsites) for response in responses),
    }


@app.get("/status")
async def status(service: CampsiteService = Depends(get_service)):
    return await service.service_status()


@app.get("/health")
async def health(service: CampsiteService = Depends(get_service)):
    healthy = await service.health_check()
    return JSONResponse({"overpass": healthy}, status_code=200 if healthy else 503)
