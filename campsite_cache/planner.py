"""Overlap-aware planning against the last successfully loaded region."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .geometry import contains, dedupe_by_id, gap_regions, overlap_ratio
from .models import BoundingBox, Campsite


@dataclass(slots=True)
class FetchPlan:
    """Either a full fetch of the request, or reuse plus the listed gap strips."""

    full: bool
    ratio: float = 0.0
    gaps: list[BoundingBox] = field(default_factory=list)
    reusable: list[Campsite] = field(default_factory=list)
    loaded: Optional[BoundingBox] = None


def plan_fetch(
    request: BoundingBox,
    loaded: BoundingBox | None,
    loaded_campsites: Iterable[Campsite],
    *,
    threshold: float = 0.7,
    min_span: float = 0.01,
) -> FetchPlan:
    loaded_campsites = list(loaded_campsites)
    if loaded is None or not loaded_campsites:
        return FetchPlan(full=True)

    ratio = overlap_ratio(request, loaded)
    if ratio < threshold:
        return FetchPlan(full=True, ratio=ratio)

    reusable = [c for c in loaded_campsites if contains(request, c.lat, c.lng)]
    return FetchPlan(
        full=False,
        ratio=ratio,
        gaps=gap_regions(request, loaded, min_span=min_span),
        reusable=reusable,
        loaded=loaded,
    )


class LoadedRegion:
    """The last loaded region and its unfiltered campsites.

    :attr:`lock` guards the short plan, replace and merge steps; it is never
    held across network I/O. Every :meth:`replace` installs campsites that
    cover the given bounds, so a slower query finishing last still leaves a
    consistent pair.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.bounds: BoundingBox | None = None
        self.campsites: list[Campsite] = []

    def plan(self, request: BoundingBox, *, threshold: float, min_span: float) -> FetchPlan:
        return plan_fetch(request, self.bounds, self.campsites, threshold=threshold, min_span=min_span)

    def replace(self, bounds: BoundingBox, campsites: Iterable[Campsite]) -> None:
        self.bounds = bounds
        self.campsites = list(campsites)

    def merge(self, campsites: Iterable[Campsite]) -> int:
        """Fold background results inside the current bounds into a non-empty snapshot."""
        if self.campsites and self.bounds is not None:
            bounds = self.bounds
            inside = [c for c in campsites if contains(bounds, c.lat, c.lng)]
            self.campsites = dedupe_by_id([*self.campsites, *inside])
        return len(self.campsites)
