"""CLI entry point: query campsites by bounds or place name and print JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Iterable, Sequence

from .config import Settings, load_settings, normalize_overpass_urls
from .models import (
    AMENITY_NAMES,
    CAMPSITE_TYPES,
    DEFAULT_MAX_RESULTS,
    DEFAULT_TYPES,
    BoundingBox,
    CampsiteRequest,
    CampsiteResponse,
    VehicleFilter,
)
from .service import CampsiteService


def main(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI."""

    args = _parse_args(argv)
    settings = load_settings()
    _configure_logging(args.log_level or settings.log_level)

    if args.overpass_url:
        settings = replace(
            settings,
            overpass_urls=tuple(normalize_overpass_urls(args.overpass_url, settings.overpass_urls)),
        )

    request = CampsiteRequest(
        bounds=_parse_bounds(args.bounds) if args.bounds else None,
        types=tuple(_parse_list(args.types, CAMPSITE_TYPES, "type")),
        amenities=tuple(_parse_list(args.amenities, AMENITY_NAMES, "amenity")) if args.amenities else (),
        max_results=args.max_results,
        vehicle_filter=_vehicle_filter(args),
        location_query=args.location,
    )
    logging.info(
        "Searching campsites for %s (types=%s)",
        args.location or args.bounds,
        ",".join(request.types),
    )

    response = asyncio.run(_run(settings, request, wait_secondary=args.wait_secondary))
    json.dump(response.to_dict(), sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    if response.status != "success":
        logging.error("Search failed: %s", response.error)
        return 1
    logging.info(
        "Returned %d campsites (cache_hit=%s, %.0f ms)",
        response.metadata.results_count,
        response.metadata.cache_hit,
        response.metadata.query_duration,
    )
    return 0


async def _run(settings: Settings, request: CampsiteRequest, *, wait_secondary: bool) -> CampsiteResponse:
    async with CampsiteService(settings) as service:
        response = await service.search(request)
        if wait_secondary:
            await service.join_background()
        return response


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument(
        "--bounds",
        help="Bounding box as south,west,north,east in degrees",
    )
    target.add_argument(
        "--location",
        help="Place name or postcode to search around",
    )
    parser.add_argument(
        "--types",
        default=",".join(DEFAULT_TYPES),
        help="Comma-separated campsite types",
    )
    parser.add_argument(
        "--amenities",
        default="",
        help="Comma-separated amenities; a campsite needs at least one",
    )
    parser.add_argument("--height", type=float, help="Vehicle height in metres")
    parser.add_argument("--length", type=float, help="Vehicle length in metres")
    parser.add_argument("--weight", type=float, help="Vehicle weight in tonnes")
    parser.add_argument("--motorhome", action="store_true", help="Require motorhome access")
    parser.add_argument("--caravan", action="store_true", help="Require caravan access")
    parser.add_argument(
        "--max-results",
        type=int,
        default=DEFAULT_MAX_RESULTS,
        help="Maximum number of campsites to return",
    )
    parser.add_argument(
        "--overpass-url",
        default=None,
        help="Override the Overpass API endpoint",
    )
    parser.add_argument(
        "--wait-secondary",
        action="store_true",
        help="Wait for the background secondary-tier fetch before exiting",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. INFO, DEBUG)",
    )

    return parser.parse_args(argv)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(message)s",
    )


def _parse_bounds(value: str) -> BoundingBox:
    try:
        south, west, north, east = (float(part) for part in value.split(","))
    except ValueError:
        raise SystemExit("--bounds must be four comma-separated numbers: south,west,north,east")
    return BoundingBox(north=north, south=south, east=east, west=west)


def _parse_list(value: str | Iterable[str], allowed: Sequence[str], label: str) -> list[str]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    parsed = [item.strip() for item in items if item.strip()]
    unknown = [item for item in parsed if item not in allowed]
    if unknown:
        raise SystemExit(f"Unknown {label}(s): {', '.join(unknown)}")
    if not parsed:
        raise SystemExit(f"At least one {label} must be specified")
    return parsed


def _vehicle_filter(args: argparse.Namespace) -> VehicleFilter | None:
    if not any((args.height, args.length, args.weight, args.motorhome, args.caravan)):
        return None
    return VehicleFilter(
        height=args.height,
        length=args.length,
        weight=args.weight,
        motorhome=args.motorhome,
        caravan=args.caravan,
    )


if __name__ == "__main__":
    sys.exit(main())
