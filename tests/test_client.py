import asyncio

import httpx
import pytest

from campsite_cache.client import OverpassClient, decode_payload
from campsite_cache.errors import (
    InvalidPayloadError,
    RateLimitExceeded,
    UpstreamClientError,
    UpstreamNetworkError,
    UpstreamServerError,
    UpstreamTimeout,
)
from campsite_cache.ratelimit import SlidingWindowRateLimiter

from conftest import FakeClock

ENDPOINTS = ("https://primary.example/api/interpreter", "https://mirror.example/api/interpreter")


def scripted(*responses):
    seen = []
    queue = list(responses)

    def handler(request):
        seen.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return seen, httpx.MockTransport(handler)


def make_client(transport, *, retries=1, limiter=None, endpoints=ENDPOINTS, timeout=30.0):
    return OverpassClient(
        endpoints=endpoints,
        user_agent="test-agent",
        timeout=timeout,
        retries=retries,
        retry_base_delay=0.0,
        rate_limiter=limiter or SlidingWindowRateLimiter(100, 1.0),
        transport=transport,
    )


@pytest.mark.asyncio
async def test_posts_query_as_plain_text():
    seen, transport = scripted(httpx.Response(200, json={"elements": []}))
    async with make_client(transport) as client:
        payload = await client.execute("[out:json];out;")

    assert payload == {"elements": []}
    request = seen[0]
    assert request.method == "POST"
    assert request.content == b"[out:json];out;"
    assert request.headers["content-type"].startswith("text/plain")
    assert request.headers["user-agent"] == "test-agent"


@pytest.mark.asyncio
async def test_retries_server_error_on_next_endpoint():
    seen, transport = scripted(httpx.Response(504), httpx.Response(200, json={"elements": [1]}))
    async with make_client(transport) as client:
        payload = await client.execute("q")

    assert payload == {"elements": [1]}
    assert [str(r.url) for r in seen] == list(ENDPOINTS)


@pytest.mark.asyncio
async def test_gives_up_after_retries():
    seen, transport = scripted(httpx.Response(500), httpx.Response(502))
    async with make_client(transport) as client:
        with pytest.raises(UpstreamServerError) as excinfo:
            await client.execute("q")

    assert excinfo.value.status_code == 502
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    seen, transport = scripted(httpx.Response(400, text="syntax error"))
    async with make_client(transport) as client:
        with pytest.raises(UpstreamClientError):
            await client.execute("q")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_network_error_is_retried():
    seen, transport = scripted(httpx.ConnectError("refused"), httpx.Response(200, json={}))
    async with make_client(transport) as client:
        assert await client.execute("q") == {}
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_network_error_surfaces_when_retries_exhausted():
    _, transport = scripted(httpx.ConnectError("refused"))
    async with make_client(transport, retries=0) as client:
        with pytest.raises(UpstreamNetworkError):
            await client.execute("q")


@pytest.mark.asyncio
async def test_html_payload_is_invalid():
    _, transport = scripted(
        httpx.Response(200, text="<html>rate_limited</html>", headers={"content-type": "text/html"}),
    )
    async with make_client(transport, retries=0) as client:
        with pytest.raises(InvalidPayloadError):
            await client.execute("q")


@pytest.mark.asyncio
async def test_timeout_maps_to_upstream_timeout():
    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    async with make_client(httpx.MockTransport(slow), retries=0, timeout=0.01) as client:
        with pytest.raises(UpstreamTimeout):
            await client.execute("q")


@pytest.mark.asyncio
async def test_budget_is_charged_once_per_call():
    seen, transport = scripted(httpx.Response(500), httpx.Response(200, json={}))
    limiter = SlidingWindowRateLimiter(1, 60.0, clock=FakeClock(0.0))
    async with make_client(transport, limiter=limiter) as client:
        await client.execute("q")
        with pytest.raises(RateLimitExceeded):
            await client.execute("q")
    assert len(seen) == 2


def test_decode_payload_accepts_mislabelled_json():
    response = httpx.Response(200, text='{"elements": []}', headers={"content-type": "text/plain"})
    assert decode_payload(response) == {"elements": []}


def test_requires_an_endpoint():
    with pytest.raises(ValueError):
        OverpassClient(endpoints=(), user_agent="x")
