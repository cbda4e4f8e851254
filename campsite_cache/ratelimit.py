"""Client-side request budgeting for the upstream APIs."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable

from .errors import RateLimitExceeded

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class SlidingWindowRateLimiter:
    """Allow at most *requests* acquisitions in any *window* seconds.

    Exhaustion raises :class:`RateLimitExceeded` instead of queueing; the
    caller is expected to back off.
    """

    def __init__(
        self,
        requests: int,
        window: float,
        *,
        enabled: bool = True,
        clock: Clock = time.monotonic,
        service: str = "overpass",
    ) -> None:
        if requests < 1:
            raise ValueError("requests must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.requests = requests
        self.window = window
        self.enabled = enabled
        self._clock = clock
        self._service = service
        self._stamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()

    def acquire(self) -> None:
        if not self.enabled:
            return
        now = self._clock()
        self._prune(now)
        if len(self._stamps) >= self.requests:
            retry_after = self.window - (now - self._stamps[0])
            raise RateLimitExceeded(retry_after, service=self._service)
        self._stamps.append(now)

    @property
    def remaining(self) -> int:
        self._prune(self._clock())
        return max(0, self.requests - len(self._stamps))

    @property
    def reset_in(self) -> float:
        """Seconds until the oldest counted request leaves the window."""
        now = self._clock()
        self._prune(now)
        if not self._stamps:
            return 0.0
        return max(0.0, self.window - (now - self._stamps[0]))


class MinIntervalThrottle:
    """Space calls at least *interval* seconds apart by sleeping the remainder."""

    def __init__(
        self,
        interval: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last_request_ts: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last_request_ts is not None:
                since_last = self._clock() - self._last_request_ts
                wait_for = max(0.0, self.interval - since_last)
                if wait_for > 0:
                    await self._sleep(wait_for)
            self._last_request_ts = self._clock()
