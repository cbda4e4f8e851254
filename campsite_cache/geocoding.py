"""Nominatim forward and reverse geocoding under a one-request-per-second policy."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Sequence

import httpx

from .client import decode_payload
from .errors import GeocodingError, InvalidPayloadError
from .models import GeocodeResult
from .ratelimit import MinIntervalThrottle

logger = logging.getLogger(__name__)

_POSTCODE_PATTERNS = (
    re.compile(r"^[A-Za-z]{1,2}\d[A-Za-z\d]?\s*\d[A-Za-z]{2}$"),  # UK
    re.compile(r"^\d{4}\s*[A-Za-z]{2}$"),  # Dutch
    re.compile(r"^[A-Za-z]\d{2}\s*[A-Za-z\d]{4}$"),  # Irish Eircode
    re.compile(r"^[A-Za-z]\d[A-Za-z]\s*\d[A-Za-z]\d$"),  # Canadian-style
)


def normalize_search_query(query: str) -> str:
    """Upper-case postcode-shaped queries; OSM indexes them that way."""
    trimmed = query.strip()
    if any(pattern.match(trimmed) for pattern in _POSTCODE_PATTERNS):
        return trimmed.upper()
    return trimmed


def _short_name(result: Mapping[str, Any]) -> str:
    name = str(result.get("display_name", "")).split(",")[0].strip()
    address = result.get("address")
    if isinstance(address, Mapping):
        if address.get("house_number") and address.get("road"):
            return f"{address['house_number']} {address['road']}"
        if address.get("road"):
            return str(address["road"])
        if address.get("postcode"):
            place = address.get("city") or address.get("town") or address.get("village") or ""
            return f"{address['postcode']}, {place}" if place else str(address["postcode"])
    return name


def _subtitle(result: Mapping[str, Any]) -> str:
    address = result.get("address")
    if isinstance(address, Mapping):
        region = address.get("state") or address.get("county") or ""
        country = address.get("country") or ""
        if region and country:
            return f"{region}, {country}"
        if country:
            return str(country)
    parts = [part.strip() for part in str(result.get("display_name", "")).split(",")]
    if len(parts) >= 2:
        return ", ".join(parts[-2:])
    return parts[-1] if parts else ""


def parse_search_result(result: Mapping[str, Any]) -> GeocodeResult | None:
    try:
        lat = float(result["lat"])
        lng = float(result["lon"])
    except (KeyError, TypeError, ValueError):
        return None
    try:
        importance = float(result.get("importance") or 0.5)
    except (TypeError, ValueError):
        importance = 0.5
    return GeocodeResult(
        display_name=str(result.get("display_name", "")),
        lat=lat,
        lng=lng,
        boundingbox=tuple(str(v) for v in result.get("boundingbox") or ()),
        type=str(result.get("type") or result.get("class") or "place"),
        importance=importance,
        name=_short_name(result),
        subtitle=_subtitle(result),
    )


def rank_results(results: Sequence[GeocodeResult], query: str) -> list[GeocodeResult]:
    """Exact name matches first, then prefix matches, then by importance."""
    needle = query.lower()

    def key(result: GeocodeResult) -> tuple[int, int, float]:
        name = (result.name or "").lower()
        return (
            0 if name == needle else 1,
            0 if name.startswith(needle) else 1,
            -result.importance,
        )

    return sorted(results, key=key)


class NominatimGeocoder:
    """Async Nominatim client; every call waits on a shared minimum interval."""

    def __init__(
        self,
        *,
        base_url: str,
        user_agent: str,
        countrycodes: Sequence[str] = (),
        throttle: MinIntervalThrottle | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._countrycodes = ",".join(countrycodes)
        self._throttle = throttle or MinIntervalThrottle(1.1)
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    async def __aenter__(self) -> "NominatimGeocoder":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, str]) -> Any:
        await self._throttle.wait()
        try:
            response = await self._client.get(f"{self.base_url}/{path}", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GeocodingError(
                f"Geocoding HTTP error: {exc.response.status_code}", service="nominatim"
            ) from exc
        except httpx.RequestError as exc:
            raise GeocodingError(f"Geocoding request failed: {exc}", service="nominatim") from exc
        try:
            return decode_payload(response, service="nominatim")
        except InvalidPayloadError as exc:
            raise GeocodingError(str(exc), service="nominatim") from exc

    async def search(
        self,
        query: str,
        *,
        limit: int = 5,
        viewbox: tuple[float, float, float, float] | None = None,
    ) -> list[GeocodeResult]:
        """Candidate places for *query*, best first.

        *viewbox* is ``(west, south, east, north)`` and only biases ranking.
        """
        normalized = normalize_search_query(query)
        params = {
            "q": normalized,
            "format": "json",
            "limit": str(limit),
            "addressdetails": "1",
            "extratags": "1",
            "namedetails": "1",
        }
        if self._countrycodes:
            params["countrycodes"] = self._countrycodes
        if viewbox is not None:
            west, south, east, north = viewbox
            params["viewbox"] = f"{west},{north},{east},{south}"
            params["bounded"] = "0"

        payload = await self._get("search", params)
        if not isinstance(payload, list):
            return []
        results = [parsed for item in payload if isinstance(item, Mapping) and (parsed := parse_search_result(item))]
        logger.info("Geocoded '%s' to %d candidates", normalized, len(results))
        return rank_results(results, normalized)

    async def geocode(self, query: str) -> GeocodeResult | None:
        results = await self.search(query, limit=1)
        return results[0] if results else None

    async def reverse(self, lat: float, lng: float) -> dict[str, str | None] | None:
        """Human-readable "City, Region" for a point, or ``None`` when unknown."""
        payload = await self._get(
            "reverse",
            {"lat": str(lat), "lon": str(lng), "format": "json", "zoom": "10", "addressdetails": "1"},
        )
        if not isinstance(payload, Mapping):
            return None
        address = payload.get("address") or {}
        city = address.get("city") or address.get("town") or address.get("village") or address.get("hamlet")
        region = address.get("state") or address.get("county")
        country = address.get("country")

        parts = [part for part in (city, region) if part]
        if not parts and country:
            parts.append(country)
        display_name = ", ".join(parts) if parts else str(payload.get("display_name") or "").split(",")[0]
        return {"display_name": display_name, "city": city, "region": region, "country": country}
