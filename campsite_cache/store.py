"""Persistent campsite cache with a per-query freshness side table."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .errors import StoreError
from .geometry import contains
from .models import BoundingBox, Campsite

logger = logging.getLogger(__name__)

ENTITY_FILE = "campsites.json"
METADATA_FILE = "cache_metadata.json"


def _read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError:
        logger.warning("Discarding corrupt cache file %s", path)
        try:
            path.unlink()
        except OSError:
            pass
        return None


def _write_json(path: Path, value: Any) -> None:
    tmp = path.with_suffix(".tmp")
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(value, handle, ensure_ascii=False)
        tmp.replace(path)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def _is_entity_record(record: Any) -> bool:
    if not isinstance(record, dict):
        return False
    data = record.get("campsite")
    if not isinstance(data, dict):
        return False
    return all(
        isinstance(data.get(name), (int, float)) and not isinstance(data.get(name), bool)
        for name in ("lat", "lng")
    )


class CampsiteStore:
    """Campsites keyed by id plus query metadata keyed by query signature.

    With a *root* directory both tables are persisted as JSON documents that
    are rewritten atomically; without one the store lives in memory only.
    Range lookups are a full scan with a bounds predicate, which is fine for
    a few thousand sites per region.
    """

    def __init__(self, root: Path | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self.root = root
        self._clock = clock
        self._entities: dict[int, dict[str, Any]] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._loaded = root is None
        self._lock = asyncio.Lock()

    @property
    def persistent(self) -> bool:
        return self.root is not None

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        assert self.root is not None
        try:
            entities, metadata = await asyncio.to_thread(self._load_files, self.root)
        except OSError as exc:
            raise StoreError(f"Failed to open campsite cache at {self.root}: {exc}", service="cache") from exc
        self._entities = entities
        self._metadata = metadata
        self._loaded = True
        logger.info("Loaded %d cached campsites from %s", len(entities), self.root)

    @staticmethod
    def _load_files(root: Path) -> tuple[dict[int, dict[str, Any]], dict[str, dict[str, Any]]]:
        root.mkdir(parents=True, exist_ok=True)
        raw_entities = _read_json(root / ENTITY_FILE) or {}
        raw_metadata = _read_json(root / METADATA_FILE) or {}
        if not isinstance(raw_entities, dict):
            logger.warning("Ignoring %s: expected an object, got %s", ENTITY_FILE, type(raw_entities).__name__)
            raw_entities = {}
        if not isinstance(raw_metadata, dict):
            logger.warning("Ignoring %s: expected an object, got %s", METADATA_FILE, type(raw_metadata).__name__)
            raw_metadata = {}

        entities: dict[int, dict[str, Any]] = {}
        for key, record in raw_entities.items():
            if not _is_entity_record(record):
                logger.debug("Skipping malformed cache record %r", key)
                continue
            try:
                entities[int(key)] = record
            except (TypeError, ValueError):
                logger.debug("Skipping cache record with bad id %r", key)
        metadata = {
            str(key): entry
            for key, entry in raw_metadata.items()
            if isinstance(entry, dict) and isinstance(entry.get("timestamp"), (int, float))
        }
        return entities, metadata

    async def _flush(self, filename: str, table: dict[Any, Any]) -> None:
        if self.root is None:
            return
        snapshot = {str(key): value for key, value in table.items()}
        try:
            await asyncio.to_thread(_write_json, self.root / filename, snapshot)
        except (OSError, TypeError, ValueError) as exc:
            raise StoreError(f"Failed to write {filename}: {exc}", service="cache") from exc

    async def upsert(self, campsites: Iterable[Campsite]) -> int:
        """Insert or overwrite campsites by id; returns how many were written.

        A campsite that cannot be serialised is skipped and the rest are
        still written.
        """
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            written = 0
            for campsite in campsites:
                try:
                    record = campsite.to_dict()
                    json.dumps(record)
                except (TypeError, ValueError) as exc:
                    logger.warning("Skipping campsite %s that cannot be cached: %s", campsite.id, exc)
                    continue
                self._entities[campsite.id] = {"campsite": record, "stored_at": now}
                written += 1
            if written:
                await self._flush(ENTITY_FILE, self._entities)
            return written

    async def query_by_bounds(self, bounds: BoundingBox) -> list[Campsite]:
        async with self._lock:
            await self._ensure_loaded()
            results: list[Campsite] = []
            try:
                for record in self._entities.values():
                    data = record["campsite"]
                    if contains(bounds, data["lat"], data["lng"]):
                        results.append(Campsite.from_dict(data))
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreError(f"Malformed cached campsite: {exc}", service="cache") from exc
            return results

    async def get_query_metadata(self, key: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            await self._ensure_loaded()
            entry = self._metadata.get(key)
            return dict(entry) if entry is not None else None

    async def get_query_timestamp(self, key: str) -> Optional[float]:
        entry = await self.get_query_metadata(key)
        if entry is None:
            return None
        return float(entry["timestamp"])

    async def set_query_timestamp(
        self,
        key: str,
        timestamp: float,
        *,
        service: str = "overpass",
        bounds: BoundingBox | None = None,
    ) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._metadata[key] = {
                "timestamp": timestamp,
                "service": service,
                "bounds": bounds.to_dict() if bounds is not None else None,
            }
            await self._flush(METADATA_FILE, self._metadata)

    async def evict_older_than(self, max_age: float, *, now: float | None = None) -> int:
        """Delete campsites whose ``last_updated`` is older than ``now - max_age``."""
        async with self._lock:
            await self._ensure_loaded()
            cutoff = (now if now is not None else self._clock()) - max_age
            try:
                expired = [
                    key
                    for key, record in self._entities.items()
                    if float(record["campsite"].get("last_updated") or 0.0) < cutoff
                ]
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreError(f"Malformed cached campsite: {exc}", service="cache") from exc
            for key in expired:
                del self._entities[key]
            if expired:
                await self._flush(ENTITY_FILE, self._entities)
                logger.info("Evicted %d cached campsites older than %.0fs", len(expired), max_age)
            return len(expired)

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            await self._ensure_loaded()
            return {"campsites": len(self._entities), "queries": len(self._metadata)}
