"""Pure bounding-box helpers: validation, overlap, gap strips and tiling."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from .errors import BoundsValidationError
from .models import BoundingBox, Campsite

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0


def _is_valid_coordinate(value: object, limit: float) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value):
        return False
    return -limit <= value <= limit


def validate_bounds(bounds: BoundingBox | None, *, max_span: float) -> BoundingBox:
    """Return *bounds* unchanged or raise :class:`BoundsValidationError`."""
    if bounds is None:
        raise BoundsValidationError("Invalid bounds provided")

    south, west, north, east = bounds.south, bounds.west, bounds.north, bounds.east
    if not (
        _is_valid_coordinate(south, 90.0)
        and _is_valid_coordinate(north, 90.0)
        and _is_valid_coordinate(west, 180.0)
        and _is_valid_coordinate(east, 180.0)
    ):
        raise BoundsValidationError(f"Invalid coordinates: lat={south}-{north}, lng={west}-{east}")

    if north <= south or east <= west:
        raise BoundsValidationError(
            f"Invalid bounds: north ({north}) must exceed south ({south}) and east ({east}) must exceed west ({west})"
        )

    lat_span = north - south
    lng_span = east - west
    if lat_span > max_span or lng_span > max_span:
        raise BoundsValidationError(
            f"Bounding box too large: {lat_span:g}° lat x {lng_span:g}° lng (max {max_span:g}° each)"
        )
    return bounds


def _round_grid(value: float) -> float:
    # Half-up rounding to 0.1° (~11 km) so nearby viewports share keys.
    return math.floor(value * 10 + 0.5) / 10


def query_key(bounds: BoundingBox, types: Iterable[str], amenities: Iterable[str]) -> str:
    """Normalised key used for both in-flight deduplication and cache metadata."""
    return "campsites_{:.1f}_{:.1f}_{:.1f}_{:.1f}_{}_{}".format(
        _round_grid(bounds.south),
        _round_grid(bounds.west),
        _round_grid(bounds.north),
        _round_grid(bounds.east),
        ",".join(sorted(set(types))),
        ",".join(sorted(set(amenities))),
    )


def contains(bounds: BoundingBox, lat: float, lng: float) -> bool:
    return bounds.south <= lat <= bounds.north and bounds.west <= lng <= bounds.east


def intersection(a: BoundingBox, b: BoundingBox) -> BoundingBox | None:
    south = max(a.south, b.south)
    north = min(a.north, b.north)
    west = max(a.west, b.west)
    east = min(a.east, b.east)
    if north <= south or east <= west:
        return None
    return BoundingBox(north=north, south=south, east=east, west=west)


def overlap_ratio(request: BoundingBox, loaded: BoundingBox) -> float:
    """Fraction of *request* already covered by *loaded* (0..1)."""
    overlap = intersection(request, loaded)
    if overlap is None:
        return 0.0
    request_area = request.area
    return overlap.area / request_area if request_area > 0 else 0.0


def gap_regions(
    request: BoundingBox,
    loaded: BoundingBox,
    *,
    min_span: float = 0.01,
) -> list[BoundingBox]:
    """Strips of *request* not covered by *loaded*.

    North and south strips span the full request width; east and west strips
    are clipped to the shared latitude range so corners are counted once.
    Strips whose span is at most *min_span* in either dimension are dropped.
    """
    gaps: list[BoundingBox] = []
    shared_south = max(request.south, loaded.south)
    shared_north = min(request.north, loaded.north)

    if request.north > loaded.north:
        gaps.append(BoundingBox(north=request.north, south=loaded.north, east=request.east, west=request.west))
    if request.south < loaded.south:
        gaps.append(BoundingBox(north=loaded.south, south=request.south, east=request.east, west=request.west))
    if request.east > loaded.east:
        gaps.append(BoundingBox(north=shared_north, south=shared_south, east=request.east, west=loaded.east))
    if request.west < loaded.west:
        gaps.append(BoundingBox(north=shared_north, south=shared_south, east=loaded.west, west=request.west))

    return [g for g in gaps if g.north - g.south > min_span and g.east - g.west > min_span]


def shrink_to_loaded(
    request: BoundingBox,
    loaded: BoundingBox,
    missing: Iterable[BoundingBox],
) -> BoundingBox:
    """Pull *request* back to *loaded*'s edge on each side whose gap strip is *missing*.

    *missing* holds strips produced by :func:`gap_regions` for the same pair.
    The result is the part of *request* covered by *loaded* plus the strips
    that did load.
    """
    north, south, east, west = request.north, request.south, request.east, request.west
    for gap in missing:
        if gap.south >= loaded.north:
            north = loaded.north
        elif gap.north <= loaded.south:
            south = loaded.south
        elif gap.west >= loaded.east:
            east = loaded.east
        elif gap.east <= loaded.west:
            west = loaded.west
    return BoundingBox(north=north, south=south, east=east, west=west)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounds_around(lat: float, lng: float, radius_km: float, *, max_span: float | None = None) -> BoundingBox:
    """Approximate square box of half-width *radius_km* centred on a point.

    The box is clipped to valid coordinates. Near the poles the longitude
    half-width is capped at ``max_span / 2`` so the box stays queryable.
    """
    radius_lat = radius_km / KM_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(lat))
    radius_lng = radius_km / (KM_PER_DEGREE_LAT * cos_lat) if cos_lat > 0 else 180.0
    if max_span is not None:
        radius_lat = min(radius_lat, max_span / 2)
        radius_lng = min(radius_lng, max_span / 2)
    return BoundingBox(
        north=min(lat + radius_lat, 90.0),
        south=max(lat - radius_lat, -90.0),
        east=min(lng + radius_lng, 180.0),
        west=max(lng - radius_lng, -180.0),
    )


def tile_bounds(bounds: BoundingBox, *, max_span: float) -> list[BoundingBox]:
    """Split *bounds* into tiles no larger than *max_span* degrees per side."""
    tiles: list[BoundingBox] = []
    lat_start = bounds.south
    while lat_start < bounds.north:
        lng_start = bounds.west
        while lng_start < bounds.east:
            tiles.append(
                BoundingBox(
                    north=min(lat_start + max_span, bounds.north),
                    south=lat_start,
                    east=min(lng_start + max_span, bounds.east),
                    west=lng_start,
                )
            )
            lng_start += max_span
        lat_start += max_span
    return tiles


def route_bounds(coordinates: Sequence[Sequence[float]], *, buffer: float = 0.1) -> BoundingBox | None:
    """Buffered bounding box of (lng, lat) route coordinates."""
    if not coordinates:
        return None
    lngs = [float(point[0]) for point in coordinates]
    lats = [float(point[1]) for point in coordinates]
    return BoundingBox(
        north=max(lats) + buffer,
        south=min(lats) - buffer,
        east=max(lngs) + buffer,
        west=min(lngs) - buffer,
    )


def dedupe_by_id(campsites: Iterable[Campsite]) -> list[Campsite]:
    """Drop repeated ids, keeping the first occurrence."""
    seen: set[int] = set()
    unique: list[Campsite] = []
    for campsite in campsites:
        if campsite.id in seen:
            continue
        seen.add(campsite.id)
        unique.append(campsite)
    return unique
