import json
from unittest.mock import patch

import pytest

from campsite_cache import main as cli
from campsite_cache.models import CampsiteMetadata, CampsiteResponse


def _fake_run(captured, *, status="success"):
    async def run(settings, request, *, wait_secondary):
        captured["settings"] = settings
        captured["request"] = request
        return CampsiteResponse(
            campsites=[],
            metadata=CampsiteMetadata(
                service="overpass",
                timestamp=0.0,
                query=request,
                results_count=0,
                cache_hit=False,
                query_duration=1.0,
            ),
            cached=False,
            bounding_box=request.bounds,
            status=status,
            error=None if status == "success" else "boom",
        )

    return run


def test_bounds_search_prints_json(capsys):
    captured = {}
    with patch.object(cli, "_run", _fake_run(captured)):
        code = cli.main(["--bounds", "50,10,51,11", "--height", "3.1", "--amenities", "wifi,showers"])

    assert code == 0
    request = captured["request"]
    assert (request.bounds.south, request.bounds.west, request.bounds.north, request.bounds.east) == (50, 10, 51, 11)
    assert request.amenities == ("wifi", "showers")
    assert request.vehicle_filter.height == 3.1
    assert json.loads(capsys.readouterr().out)["status"] == "success"


def test_location_search_and_overpass_override():
    captured = {}
    with patch.object(cli, "_run", _fake_run(captured)):
        cli.main(["--location", "Lyon", "--overpass-url", "https://mirror.example/api/interpreter"])

    assert captured["request"].location_query == "Lyon"
    assert captured["request"].vehicle_filter is None
    assert captured["settings"].overpass_urls[-1] == "https://mirror.example/api/interpreter"


def test_error_response_exits_nonzero():
    with patch.object(cli, "_run", _fake_run({}, status="error")):
        assert cli.main(["--bounds", "50,10,51,11"]) == 1


@pytest.mark.parametrize(
    "argv",
    [
        ["--bounds", "50,10,51"],
        ["--bounds", "50,10,51,11", "--types", "hotel"],
        ["--bounds", "50,10,51,11", "--location", "Lyon"],
        [],
    ],
)
def test_bad_arguments_exit(argv):
    with pytest.raises(SystemExit):
        cli.main(argv)
