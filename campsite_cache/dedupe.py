"""Sharing of identical in-flight queries."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InFlightRequests(Generic[T]):
    """At most one running producer per key; concurrent callers share its outcome."""

    def __init__(self) -> None:
        self._pending: Dict[str, asyncio.Task[T]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(producer())
            self._pending[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.debug("Joining in-flight request %s", key)
        # Shielded: a cancelled caller must not cancel the shared fetch.
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[T]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("In-flight request %s failed: %s", key, task.exception())
