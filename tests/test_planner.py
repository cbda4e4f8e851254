from campsite_cache.models import BoundingBox, Campsite
from campsite_cache.planner import LoadedRegion, plan_fetch

REGION = BoundingBox(north=51.0, south=50.0, east=11.0, west=10.0)


def site(site_id, lat=50.5, lng=10.5):
    return Campsite(id=site_id, type="campsite", name=f"site {site_id}", lat=lat, lng=lng)


def test_empty_snapshot_means_full_fetch():
    assert plan_fetch(REGION, None, []).full is True
    assert plan_fetch(REGION, REGION, []).full is True


def test_high_overlap_reuses_sites_and_remembers_loaded_bounds():
    shifted = BoundingBox(north=51.15, south=50.15, east=11.0, west=10.0)
    plan = plan_fetch(shifted, REGION, [site(1), site(2, lat=50.1)])

    assert plan.full is False
    assert plan.loaded == REGION
    assert [c.id for c in plan.reusable] == [1]
    assert len(plan.gaps) == 1


def test_merge_keeps_only_sites_inside_the_snapshot():
    region = LoadedRegion()
    assert region.merge([site(1)]) == 0

    region.replace(REGION, [site(1)])
    assert region.merge([site(1), site(2), site(3, lat=52.0)]) == 2
    assert [c.id for c in region.campsites] == [1, 2]
