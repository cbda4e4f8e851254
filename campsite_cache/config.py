"""Environment-driven settings for the campsite service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

OVERPASS_URL = "https://overpass-api.de/api/interpreter"
NOMINATIM_URL = "https://nominatim.openstreetmap.org"
DEFAULT_USER_AGENT = "CampsiteCache/1.0 (+https://github.com/campsite-cache)"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def normalize_overpass_urls(
    overpass_url: str | None = None,
    overpass_urls: Sequence[str] | None = None,
) -> list[str]:
    """Merge endpoint overrides into a de-duplicated, ordered list."""
    ordered: list[str] = []
    if overpass_urls:
        ordered.extend([url.strip() for url in overpass_urls if url and url.strip()])
    if overpass_url:
        ordered.append(overpass_url.strip())
    if not ordered:
        ordered.append(OVERPASS_URL)

    seen: set[str] = set()
    unique: list[str] = []
    for url in ordered:
        if url and url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


@dataclass(frozen=True, slots=True)
class Settings:
    overpass_urls: tuple[str, ...] = (OVERPASS_URL,)
    nominatim_url: str = NOMINATIM_URL
    user_agent: str = DEFAULT_USER_AGENT
    cache_dir: Optional[Path] = None
    cache_max_age: float = 24 * 60 * 60
    eviction_interval: float = 60 * 60
    request_timeout: float = 30.0
    retries: int = 1
    retry_base_delay: float = 1.0
    rate_limit_requests: int = 2
    rate_limit_window: float = 1.0
    geocode_interval: float = 1.1
    secondary_delay: float = 2.0
    overlap_threshold: float = 0.7
    gap_min_span: float = 0.01
    max_span: float = 5.0
    location_radius_km: float = 50.0
    log_level: str = "INFO"
    countrycodes: tuple[str, ...] = field(
        default=(
            "gb", "ie", "fr", "de", "es", "pt", "it", "nl", "be", "at", "ch", "dk", "no", "se", "fi",
            "pl", "cz", "hr", "si", "gr", "hu", "sk", "ro", "bg", "ee", "lv", "lt", "lu", "mt", "cy",
        )
    )


def load_settings() -> Settings:
    """Read settings from the environment, falling back to defaults."""
    urls: list[str] = []
    env_multi = os.getenv("OVERPASS_URLS")
    if env_multi:
        urls.extend([url.strip() for url in env_multi.split(",") if url.strip()])
    cache_dir = (os.getenv("CAMPSITE_CACHE_DIR") or "").strip()
    defaults = Settings()
    return Settings(
        overpass_urls=tuple(normalize_overpass_urls(os.getenv("OVERPASS_URL"), urls)),
        nominatim_url=(os.getenv("NOMINATIM_URL") or NOMINATIM_URL).rstrip("/"),
        user_agent=os.getenv("CAMPSITE_USER_AGENT", DEFAULT_USER_AGENT),
        cache_dir=Path(cache_dir) if cache_dir else None,
        cache_max_age=_env_float("CAMPSITE_CACHE_MAX_AGE", defaults.cache_max_age),
        eviction_interval=_env_float("CAMPSITE_EVICTION_INTERVAL", defaults.eviction_interval),
        request_timeout=_env_float("CAMPSITE_REQUEST_TIMEOUT", defaults.request_timeout),
        retries=max(0, _env_int("CAMPSITE_RETRIES", defaults.retries)),
        retry_base_delay=_env_float("CAMPSITE_RETRY_BASE_DELAY", defaults.retry_base_delay),
        rate_limit_requests=max(1, _env_int("CAMPSITE_RATE_LIMIT_REQUESTS", defaults.rate_limit_requests)),
        rate_limit_window=_env_float("CAMPSITE_RATE_LIMIT_WINDOW", defaults.rate_limit_window),
        geocode_interval=_env_float("CAMPSITE_GEOCODE_INTERVAL", defaults.geocode_interval),
        secondary_delay=_env_float("CAMPSITE_SECONDARY_DELAY", defaults.secondary_delay),
        overlap_threshold=_env_float("CAMPSITE_OVERLAP_THRESHOLD", defaults.overlap_threshold),
        gap_min_span=_env_float("CAMPSITE_GAP_MIN_SPAN", defaults.gap_min_span),
        max_span=_env_float("CAMPSITE_MAX_SPAN", defaults.max_span),
        location_radius_km=_env_float("CAMPSITE_LOCATION_RADIUS_KM", defaults.location_radius_km),
        log_level=os.getenv("CAMPSITE_LOG_LEVEL", defaults.log_level),
    )
