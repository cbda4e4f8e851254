"""Overpass QL construction and normalisation of Overpass elements."""

from __future__ import annotations

import logging
import re
import time
from enum import Enum
from typing import Any, Iterable, Mapping
from urllib.parse import quote

from .geometry import validate_bounds
from .models import (
    DEFAULT_MAX_RESULTS,
    Access,
    Amenities,
    BoundingBox,
    Campsite,
    CapacityDetails,
    Contact,
    Policies,
    StructuredAddress,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_QUERY = "[out:json][timeout:5];out count;"

# Tags read during normalisation; anything else in a payload is ignored.
KNOWN_TAG_KEYS: frozenset[str] = frozenset(
    {
        "abandoned", "addr:city", "addr:country", "addr:postcode", "addr:street", "amenity", "bbq",
        "capacity", "capacity:caravans", "capacity:pitches", "capacity:tents", "caravan", "demolished",
        "description", "description:en", "disused", "dog", "drinking_water", "electricity", "email",
        "fee", "highway", "hot_water", "image", "image:wikimedia", "internet_access", "kitchen",
        "laundry", "lifecycle_status", "maxheight", "maxlength", "maxweight", "motorhome", "name",
        "name:en", "nudism", "opening_hours", "openfire", "operator", "phone", "picnic_table",
        "playground", "power_supply", "reservation", "restaurant", "sanitary_dump_station", "shop",
        "shower", "stars", "swimming_pool", "tents", "toilets", "tourism", "tourism:disused", "url",
        "waste_disposal", "website", "wifi", "wikimedia_commons",
    }
)

LIFECYCLE_FLAGS = ("disused", "abandoned", "demolished", "tourism:disused")
LIFECYCLE_STATUSES = frozenset({"abandoned", "disused", "demolished"})

COMPLETENESS_AMENITY_TAGS = (
    "drinking_water",
    "electricity",
    "shower",
    "toilets",
    "wifi",
    "internet_access",
    "swimming_pool",
    "shop",
    "restaurant",
    "playground",
    "laundry",
    "sanitary_dump_station",
)

_NUMBER_STRIP = re.compile(r"[^\d.]")


class Priority(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


def _bbox_filter(bounds: BoundingBox) -> str:
    return f"{bounds.south:.6f},{bounds.west:.6f},{bounds.north:.6f},{bounds.east:.6f}"


def query_statements(bounds: BoundingBox, types: Iterable[str], priority: Priority) -> list[str]:
    """Overpass statements for one tier.

    The primary tier is nodes and ways of the common tags and covers the bulk
    of sites; the secondary tier holds relations and rarer tags.
    """
    wanted = set(types)
    bbox = _bbox_filter(bounds)
    statements: list[str] = []

    if priority is Priority.PRIMARY:
        if "campsite" in wanted:
            statements.append(f'node["tourism"="camp_site"]({bbox});')
            statements.append(f'way["tourism"="camp_site"]({bbox});')
        if "caravan_site" in wanted:
            statements.append(f'node["tourism"="caravan_site"]({bbox});')
            statements.append(f'way["tourism"="caravan_site"]({bbox});')
        if "aire" in wanted:
            statements.append(f'node["amenity"="parking"]["motorhome"="yes"]({bbox});')
            statements.append(f'way["amenity"="parking"]["motorhome"="yes"]({bbox});')
    else:
        if "campsite" in wanted:
            statements.append(f'relation["tourism"="camp_site"]({bbox});')
        if "caravan_site" in wanted:
            statements.append(f'relation["tourism"="caravan_site"]({bbox});')
        if "aire" in wanted:
            statements.append(f'node["amenity"="parking"]["caravan"="yes"]({bbox});')
            statements.append(f'way["amenity"="parking"]["caravan"="yes"]({bbox});')
            statements.append(f'node["tourism"="wilderness_hut"]({bbox});')
            statements.append(f'node["highway"="services"]["motorhome"="yes"]({bbox});')
            statements.append(f'way["highway"="services"]["motorhome"="yes"]({bbox});')
    return statements


def build_query(
    bounds: BoundingBox,
    types: Iterable[str],
    priority: Priority = Priority.PRIMARY,
    *,
    max_span: float = 5.0,
    max_results: int = DEFAULT_MAX_RESULTS,
) -> str | None:
    """Build an Overpass QL query, or ``None`` when a secondary tier has nothing to ask.

    Raises :class:`~campsite_cache.errors.BoundsValidationError` for bounds
    that must never reach the upstream.
    """
    validate_bounds(bounds, max_span=max_span)
    statements = query_statements(bounds, types, priority)
    if not statements:
        if priority is Priority.SECONDARY:
            return None
        statements.append(f'node["tourism"="camp_site"]({_bbox_filter(bounds)});')
    return f"[out:json][timeout:30];({''.join(statements)});out center meta {max_results};"


def known_tags(raw: Any) -> dict[str, str]:
    """Restrict an element's tag dictionary to string values of known keys."""
    if not isinstance(raw, Mapping):
        return {}
    return {
        key: value.strip()
        for key, value in raw.items()
        if key in KNOWN_TAG_KEYS and isinstance(value, str) and value.strip()
    }


def parse_bool(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"yes", "true", "1"}
    return False


def parse_number(value: str | float | int | None) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(_NUMBER_STRIP.sub("", value))
        except ValueError:
            return None
    return None


def is_retired(tags: Mapping[str, str]) -> bool:
    if any(tags.get(flag) == "yes" for flag in LIFECYCLE_FLAGS):
        return True
    return tags.get("lifecycle_status") in LIFECYCLE_STATUSES


def determine_type(tags: Mapping[str, str]) -> str:
    tourism = tags.get("tourism")
    amenity = tags.get("amenity")
    if tourism == "camp_site":
        return "campsite"
    if tourism == "caravan_site":
        return "caravan_site"
    if amenity == "parking" and (tags.get("motorhome") == "yes" or tags.get("caravan") == "yes"):
        return "aire"
    if tags.get("highway") == "services" and tags.get("motorhome") == "yes":
        return "aire"
    if amenity == "parking":
        return "parking"
    return "campsite"


def data_completeness(tags: Mapping[str, str]) -> str:
    has_name = bool(tags.get("name"))
    amenity_count = sum(1 for key in COMPLETENESS_AMENITY_TAGS if tags.get(key) == "yes")
    has_contact = bool(tags.get("phone") or tags.get("website") or tags.get("email"))
    has_hours = bool(tags.get("opening_hours"))

    if has_name and amenity_count >= 3 and has_contact and has_hours:
        return "detailed"
    if has_name and (amenity_count >= 1 or has_contact):
        return "basic"
    return "minimal"


def quality_score(tags: Mapping[str, str]) -> float:
    checks = (
        tags.get("name"),
        tags.get("phone") or tags.get("website"),
        tags.get("opening_hours"),
        tags.get("drinking_water"),
        tags.get("electricity"),
        tags.get("toilets") or tags.get("amenity") == "toilets",
        tags.get("motorhome") or tags.get("caravan"),
    )
    return round(sum(1 for check in checks if check) / len(checks), 2)


def resolve_image_url(tags: Mapping[str, str]) -> str | None:
    wiki_file = tags.get("wikimedia_commons") or tags.get("image:wikimedia")
    if wiki_file:
        filename = re.sub(r"^File:", "", wiki_file)
        return f"https://commons.wikimedia.org/w/thumb.php?f={quote(filename, safe='')}&w=400"
    image = tags.get("image")
    if image and image.startswith("http"):
        return image
    return None


def _coordinates(element: Mapping[str, Any]) -> tuple[float, float] | None:
    if "lat" in element and "lon" in element:
        lat, lon = element["lat"], element["lon"]
    else:
        center = element.get("center")
        if not isinstance(center, Mapping) or "lat" not in center or "lon" not in center:
            return None
        lat, lon = center["lat"], center["lon"]
    try:
        return float(lat), float(lon)
    except (TypeError, ValueError):
        return None


def parse_element(element: Mapping[str, Any], *, now: float | None = None) -> Campsite | None:
    """Normalise one Overpass element, or ``None`` if it must not be materialised."""
    osm_id = element.get("id")
    if not isinstance(osm_id, int) or isinstance(osm_id, bool):
        logger.debug("Skipping element without id: %s", element)
        return None

    coords = _coordinates(element)
    tags = known_tags(element.get("tags"))
    if coords is None or not tags:
        logger.debug("Skipping element %s without coordinates or tags", osm_id)
        return None
    if is_retired(tags):
        logger.debug("Skipping retired element %s", osm_id)
        return None

    lat, lng = coords
    site_type = determine_type(tags)

    return Campsite(
        id=osm_id,
        osm_id=osm_id,
        type=site_type,  # type: ignore[arg-type]
        name=tags.get("name") or tags.get("name:en") or f"{site_type} {osm_id}",
        lat=lat,
        lng=lng,
        amenities=Amenities(
            toilets=tags.get("amenity") == "toilets" or parse_bool(tags.get("toilets")),
            showers=parse_bool(tags.get("shower")),
            drinking_water=parse_bool(tags.get("drinking_water")),
            electricity=parse_bool(tags.get("electricity")),
            wifi=tags.get("internet_access") == "wifi" or parse_bool(tags.get("wifi")),
            restaurant=tags.get("amenity") == "restaurant" or parse_bool(tags.get("restaurant")),
            shop=parse_bool(tags.get("shop")),
            playground=parse_bool(tags.get("playground")),
            laundry=parse_bool(tags.get("laundry")),
            swimming_pool=parse_bool(tags.get("swimming_pool")),
            sanitary_dump_station=parse_bool(tags.get("sanitary_dump_station")),
            waste_disposal=parse_bool(tags.get("waste_disposal")),
            hot_water=parse_bool(tags.get("hot_water")),
            kitchen=parse_bool(tags.get("kitchen")),
            picnic_table=parse_bool(tags.get("picnic_table")),
            bbq=parse_bool(tags.get("bbq")),
        ),
        access=Access(
            motorhome=parse_bool(tags.get("motorhome")),
            caravan=parse_bool(tags.get("caravan")),
            tent=site_type == "campsite" and tags.get("tents") != "no",
            max_height=parse_number(tags.get("maxheight")),
            max_length=parse_number(tags.get("maxlength")),
            max_weight=parse_number(tags.get("maxweight")),
        ),
        contact=Contact(
            phone=tags.get("phone"),
            website=tags.get("website") or tags.get("url"),
            email=tags.get("email"),
        ),
        opening_hours=tags.get("opening_hours"),
        fee=tags.get("fee"),
        reservation=tags.get("reservation"),
        capacity=parse_number(tags.get("capacity")),
        stars=parse_number(tags.get("stars")),
        description=tags.get("description") or tags.get("description:en"),
        operator=tags.get("operator"),
        image_url=resolve_image_url(tags),
        power_supply=tags.get("power_supply"),
        policies=Policies(
            dogs=tags.get("dog"),
            fires=parse_bool(tags.get("openfire")),
            bbq=parse_bool(tags.get("bbq")),
            nudism=parse_bool(tags.get("nudism")),
        ),
        capacity_details=CapacityDetails(
            pitches=parse_number(tags.get("capacity:pitches")),
            tents=parse_number(tags.get("capacity:tents")),
            caravans=parse_number(tags.get("capacity:caravans")),
        ),
        structured_address=StructuredAddress(
            street=tags.get("addr:street"),
            city=tags.get("addr:city"),
            postcode=tags.get("addr:postcode"),
            country=tags.get("addr:country"),
        ),
        data_completeness=data_completeness(tags),  # type: ignore[arg-type]
        source="openstreetmap",
        last_updated=now if now is not None else time.time(),
        quality_score=quality_score(tags),
    )


def parse_elements(payload: Any, *, now: float | None = None) -> list[Campsite]:
    """Normalise an Overpass JSON payload; malformed records are skipped."""
    if not isinstance(payload, Mapping):
        return []
    elements = payload.get("elements") or []
    if not isinstance(elements, list):
        return []
    stamp = now if now is not None else time.time()
    campsites: list[Campsite] = []
    for element in elements:
        if not isinstance(element, Mapping):
            continue
        campsite = parse_element(element, now=stamp)
        if campsite is not None:
            campsites.append(campsite)
    return campsites
