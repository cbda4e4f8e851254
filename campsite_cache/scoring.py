"""Vehicle/amenity filtering and ranking of campsites."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Sequence

from .geometry import haversine_km
from .models import BoundingBox, Campsite, VehicleFilter

TIER_ORDER = {"detailed": 0, "basic": 1, "minimal": 2}


def _within_limit(required: float | None, limit: float | None) -> bool:
    if not required or limit is None:
        return True
    return limit >= required


def is_vehicle_compatible(campsite: Campsite, vehicle: VehicleFilter) -> bool:
    access = campsite.access
    if vehicle.motorhome and not access.motorhome:
        return False
    if vehicle.caravan and not access.caravan:
        return False
    return (
        _within_limit(vehicle.height, access.max_height)
        and _within_limit(vehicle.length, access.max_length)
        and _within_limit(vehicle.weight, access.max_weight)
    )


def has_any_amenity(campsite: Campsite, amenities: Sequence[str]) -> bool:
    return any(getattr(campsite.amenities, name, False) is True for name in amenities)


def filter_and_score(
    campsites: Iterable[Campsite],
    bounds: BoundingBox,
    *,
    vehicle: VehicleFilter | None = None,
    amenities: Sequence[str] = (),
) -> list[Campsite]:
    """Apply the caller's filters and order most-complete first, then nearest.

    Distance is measured from the centre of *bounds*. When a vehicle filter is
    given, surviving campsites are marked ``vehicle_compatible=True``.
    """
    filtered = list(campsites)
    if vehicle is not None:
        filtered = [
            replace(campsite, vehicle_compatible=True)
            for campsite in filtered
            if is_vehicle_compatible(campsite, vehicle)
        ]
    if amenities:
        filtered = [campsite for campsite in filtered if has_any_amenity(campsite, amenities)]

    center_lat, center_lng = bounds.center

    def sort_key(campsite: Campsite) -> tuple[int, float]:
        tier = TIER_ORDER.get(campsite.data_completeness, TIER_ORDER["minimal"])
        return tier, haversine_km(center_lat, center_lng, campsite.lat, campsite.lng)

    filtered.sort(key=sort_key)
    return filtered
