import pytest

from campsite_cache.errors import GeocodingError
from campsite_cache.geocoding import NominatimGeocoder, normalize_search_query, rank_results
from campsite_cache.models import GeocodeResult
from campsite_cache.ratelimit import MinIntervalThrottle

from conftest import FakeClock, NominatimStub


def make_geocoder(stub, **kwargs):
    return NominatimGeocoder(
        base_url="https://nominatim.example/",
        user_agent="test-agent",
        countrycodes=("gb", "fr"),
        throttle=MinIntervalThrottle(0.0),
        transport=stub.transport,
        **kwargs,
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("sw1a 1aa", "SW1A 1AA"),
        ("1012ab", "1012AB"),
        ("d02 x285", "D02 X285"),
        ("  Lyon ", "Lyon"),
        ("lake district", "lake district"),
    ],
)
def test_normalize_search_query(raw, expected):
    assert normalize_search_query(raw) == expected


def test_rank_prefers_exact_then_prefix_then_importance():
    def result(name, importance):
        return GeocodeResult(display_name=name, lat=0, lng=0, boundingbox=(), type="city", importance=importance, name=name)

    ranked = rank_results(
        [result("Great Paris Lake", 0.9), result("Paris Gare", 0.3), result("Paris", 0.5), result("Parish", 0.8)],
        "Paris",
    )
    assert [r.name for r in ranked] == ["Paris", "Parish", "Paris Gare", "Great Paris Lake"]


@pytest.mark.asyncio
async def test_search_sends_policy_params_and_parses():
    stub = NominatimStub(
        results=[
            {
                "display_name": "Keswick, Cumberland, England, United Kingdom",
                "lat": "54.6",
                "lon": "-3.13",
                "boundingbox": ["54.5", "54.7", "-3.2", "-3.0"],
                "type": "town",
                "importance": 0.55,
                "address": {"town": "Keswick", "county": "Cumberland", "country": "United Kingdom"},
            },
            {"display_name": "no coordinates"},
        ]
    )
    async with make_geocoder(stub) as geocoder:
        results = await geocoder.search("keswick", viewbox=(-4.0, 54.0, -2.0, 55.0))

    assert len(results) == 1
    place = results[0]
    assert (place.lat, place.lng) == (54.6, -3.13)
    assert place.subtitle == "Cumberland, United Kingdom"
    assert place.boundingbox == ("54.5", "54.7", "-3.2", "-3.0")

    params = stub.requests[0].url.params
    assert stub.requests[0].url.path == "/search"
    assert params["countrycodes"] == "gb,fr"
    assert params["viewbox"] == "-4.0,55.0,-2.0,54.0"
    assert params["bounded"] == "0"
    assert stub.requests[0].headers["user-agent"] == "test-agent"


@pytest.mark.asyncio
async def test_geocode_returns_none_without_results():
    async with make_geocoder(NominatimStub(results=[])) as geocoder:
        assert await geocoder.geocode("nowhere") is None


@pytest.mark.asyncio
async def test_http_errors_become_geocoding_errors():
    stub = NominatimStub()
    stub.status_code = 503
    async with make_geocoder(stub) as geocoder:
        with pytest.raises(GeocodingError):
            await geocoder.geocode("anywhere")


@pytest.mark.asyncio
async def test_reverse_builds_city_region_label():
    stub = NominatimStub(reverse={"address": {"village": "Zermatt", "state": "Valais", "country": "Switzerland"}})
    async with make_geocoder(stub) as geocoder:
        location = await geocoder.reverse(46.02, 7.75)

    assert location == {"display_name": "Zermatt, Valais", "city": "Zermatt", "region": "Valais", "country": "Switzerland"}
    assert stub.requests[0].url.params["zoom"] == "10"


@pytest.mark.asyncio
async def test_calls_share_the_minimum_interval():
    clock = FakeClock(0.0)
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    stub = NominatimStub(results=[])
    geocoder = NominatimGeocoder(
        base_url="https://nominatim.example",
        user_agent="test-agent",
        throttle=MinIntervalThrottle(1.1, clock=clock, sleep=fake_sleep),
        transport=stub.transport,
    )
    async with geocoder:
        await geocoder.search("a")
        await geocoder.search("b")

    assert sleeps == [pytest.approx(1.1)]
    assert "countrycodes" not in stub.requests[0].url.params
