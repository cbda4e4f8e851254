"""Rate-limited async client for the Overpass API."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Sequence

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import (
    TRANSIENT_ERRORS,
    InvalidPayloadError,
    UpstreamClientError,
    UpstreamNetworkError,
    UpstreamServerError,
    UpstreamTimeout,
)
from .ratelimit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

QUERY_CONTENT_TYPE = "text/plain; charset=utf-8"


def decode_payload(response: httpx.Response, *, service: str = "overpass") -> Any:
    """Decode a JSON body, tolerating servers that mislabel it as text.

    Overpass answers overload and rate-limit conditions with HTML pages, so a
    body that does not parse surfaces as :class:`InvalidPayloadError` rather
    than a bare ``ValueError``.
    """
    content_type = (response.headers.get("content-type") or "").lower()
    try:
        if "json" in content_type:
            return response.json()
        return json.loads(response.text)
    except ValueError as exc:
        raise InvalidPayloadError(
            "Upstream returned a non-JSON payload; the server may be overloaded.",
            service=service,
        ) from exc


class OverpassClient:
    """POSTs Overpass QL under a sliding-window budget with timeout and backoff."""

    def __init__(
        self,
        *,
        endpoints: Sequence[str],
        user_agent: str,
        timeout: float = 30.0,
        retries: int = 1,
        retry_base_delay: float = 1.0,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one Overpass endpoint is required")
        if retries < 0:
            raise ValueError("retries must be >= 0")

        self.endpoints = tuple(endpoints)
        self.timeout = timeout
        self._retries = retries
        self._retry_base_delay = retry_base_delay
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(2, 1.0)
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    async def __aenter__(self) -> "OverpassClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(self, query: str, *, timeout: float | None = None) -> Any:
        """Run *query* and return the decoded JSON payload.

        The budget is charged once per call, before any retry. 4xx responses
        and budget exhaustion are raised immediately; timeouts, network
        failures, 5xx and undecodable bodies are retried with exponential
        backoff, rotating through the configured endpoints.
        """
        self.rate_limiter.acquire()
        effective_timeout = timeout if timeout is not None else self.timeout

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retries + 1),
            wait=wait_exponential(multiplier=self._retry_base_delay),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                index = (attempt.retry_state.attempt_number - 1) % len(self.endpoints)
                return await self._post(self.endpoints[index], query, effective_timeout)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _post(self, endpoint: str, query: str, timeout: float) -> Any:
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    endpoint,
                    content=query.encode("utf-8"),
                    headers={"Content-Type": QUERY_CONTENT_TYPE},
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout(f"Request timeout after {timeout:g}s") from exc
        except httpx.RequestError as exc:
            raise UpstreamNetworkError(f"Network connection to {endpoint} failed: {exc}") from exc

        status = response.status_code
        if 400 <= status < 500:
            raise UpstreamClientError(status)
        if status >= 500:
            raise UpstreamServerError(status)
        return decode_payload(response)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(
            "Overpass attempt %d failed: %s",
            retry_state.attempt_number,
            exc,
        )
