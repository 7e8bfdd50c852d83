import asyncio
import random

import pytest

from conftest import T0, exhaust_quota, raw_place
from discovery.core.contracts import CacheEntry, PlaceSummary
from discovery.core.geo import haversine_m
from discovery.core.keying import area_key
from discovery.core.session import Session
from discovery.core.storage import LAST_CLEANUP_KEY, PLACE_DETAILS_CACHE_KEY, PLACES_CACHE_KEY
from discovery.services.google_places import NearbyPage, result_to_details
from discovery.services.places import PlacesCache, entry_is_valid
from discovery.services.remote_store import PLACE_CACHES, PLACE_DETAILS, PLACES

DAY_MS = 24 * 60 * 60 * 1000

BIG_BEN = (51.5007, -0.1246)


def westminster_page() -> NearbyPage:
    return NearbyPage(
        status="OK",
        results=[
            raw_place("abbey", "Westminster Abbey", 51.4993, -0.1273,
                      types=["church", "tourist_attraction", "place_of_worship"], rating=4.6, ratings=60_000, photos=10),
            raw_place("parking", "Westminster Parking", 51.4990, -0.1260,
                      types=["parking", "point_of_interest"], rating=3.9, ratings=250, vicinity="Great College St"),
            raw_place("bigben", "Big Ben", 51.5007, -0.1246,
                      types=["tourist_attraction", "point_of_interest"], rating=4.6, ratings=120_000, photos=5),
        ],
    )


def seed_remote_area(remote, lat, lng, places, now=T0):
    entry = CacheEntry(
        area_key=area_key(lat, lng),
        center_lat=lat,
        center_lng=lng,
        place_ids=[p.place_id for p in places],
        created_at=now,
        expires_at=now + 3 * DAY_MS,
        radius=1000.0,
    )
    remote.put(PLACE_CACHES, entry.area_key, entry.model_dump(), entry.expires_at)
    for p in places:
        remote.put(PLACES, p.place_id, p.model_dump(), entry.expires_at)
    return entry


def summary(pid, name, lat, lng):
    return PlaceSummary(place_id=pid, name=name, lat=lat, lng=lng, types=["museum"], rating=4.5)


# ──────────────────────────────────────────────────────────────
# Provider path
# ──────────────────────────────────────────────────────────────

class TestProviderFetch:
    async def test_big_ben_scenario(self, places, provider):
        provider.pages = [westminster_page()]

        result = await places.fetch_nearby_places(*BIG_BEN)

        ids = [p.place_id for p in result.places]
        assert ids == ["bigben", "abbey"]
        assert result.places[0].distance == pytest.approx(0.0, abs=0.01)
        assert result.places[0].distance <= result.places[1].distance
        expected = max(1000.0, max(p.distance for p in result.places) + 200.0)
        assert result.furthest_distance == pytest.approx(expected)
        assert all(p.tourism_score > 0 for p in result.places)

    async def test_writes_through_every_tier(self, places, provider, local, remote):
        provider.pages = [westminster_page()]
        await places.fetch_nearby_places(*BIG_BEN)

        blob = local.get(PLACES_CACHE_KEY)
        assert blob["entry"]["place_ids"] == ["bigben", "abbey"]
        assert area_key(*BIG_BEN) in remote.ids(PLACE_CACHES)
        assert set(remote.ids(PLACES)) == {"bigben", "abbey"}
        # stored copies carry no per-caller distance
        assert remote.docs[(PLACES, "bigben")]["distance"] is None

    async def test_second_query_nearby_is_served_from_memory(self, places, provider):
        provider.pages = [westminster_page()]
        await places.fetch_nearby_places(*BIG_BEN)
        await places.fetch_nearby_places(51.5010, -0.1250)
        assert len(provider.nearby_calls) == 1

    async def test_force_refresh_skips_caches(self, places, provider):
        provider.pages = [westminster_page(), westminster_page()]
        await places.fetch_nearby_places(*BIG_BEN)
        await places.fetch_nearby_places(*BIG_BEN, force_refresh=True)
        assert len(provider.nearby_calls) == 2

    async def test_paginates_with_tokens(self, places, provider, quota):
        provider.pages = [
            NearbyPage(status="OK", results=[raw_place("a", "A Museum", 51.5, -0.12, types=["museum"])], next_page_token="t1"),
            NearbyPage(status="OK", results=[raw_place("b", "B Museum", 51.5, -0.121, types=["museum"])], next_page_token="t2"),
            NearbyPage(status="OK", results=[raw_place("c", "C Museum", 51.5, -0.122, types=["museum"])], next_page_token="t3"),
        ]
        result = await places.fetch_nearby_places(51.5, -0.12)
        assert provider.nearby_calls == [None, "t1", "t2"]
        assert {p.place_id for p in result.places} == {"a", "b", "c"}
        stats = await quota.get_quota_stats()
        assert stats.by_category.places == 3

    async def test_pagination_stops_when_quota_runs_out(self, places, provider, quota, cfg):
        for _ in range(cfg.quota_daily_max - 1):
            await quota.record_api_call("directions")
        provider.pages = [
            NearbyPage(status="OK", results=[raw_place("a", "A Museum", 51.5, -0.12, types=["museum"])], next_page_token="t1"),
            NearbyPage(status="OK", results=[raw_place("b", "B Museum", 51.5, -0.121, types=["museum"])]),
        ]
        result = await places.fetch_nearby_places(51.5, -0.12)
        assert provider.nearby_calls == [None]
        assert [p.place_id for p in result.places] == ["a"]

    async def test_non_ok_status_writes_nothing(self, places, provider, local):
        provider.pages = [NearbyPage(status="REQUEST_DENIED")]
        result = await places.fetch_nearby_places(51.5, -0.12)
        assert result.places == []
        assert result.furthest_distance == 1000.0
        assert local.get(PLACES_CACHE_KEY) is None

    async def test_failed_later_page_keeps_earlier_pages(self, places, provider, quota, local):
        provider.pages = [
            NearbyPage(status="OK", results=[raw_place("bigben", "Big Ben", 51.5007, -0.1246,
                                                       types=["tourist_attraction"], rating=4.6)],
                       next_page_token="t1"),
        ]
        provider.errors[1] = RuntimeError("places request timed out")

        result = await places.fetch_nearby_places(*BIG_BEN)

        assert provider.nearby_calls == [None, "t1"]
        assert [p.place_id for p in result.places] == ["bigben"]
        assert local.get(PLACES_CACHE_KEY)["entry"]["place_ids"] == ["bigben"]
        stats = await quota.get_quota_stats()
        assert stats.by_category.places == 2

    async def test_failed_first_page_serves_memory(self, places, provider):
        provider.errors[0] = RuntimeError("places request timed out")
        result = await places.fetch_nearby_places(*BIG_BEN)
        assert result.places == []
        assert len(provider.nearby_calls) == 1

    async def test_caps_result_count(self, places, provider, cfg):
        results = [
            raw_place(f"m{i}", f"Museum {i}", 51.5 + i * 0.0001, -0.12, types=["museum"], rating=4.5)
            for i in range(30)
        ]
        provider.pages = [NearbyPage(status="OK", results=results)]
        result = await places.fetch_nearby_places(51.5, -0.12)
        assert len(result.places) == cfg.places_max_results
        assert result.places[0].place_id == "m0"


# ──────────────────────────────────────────────────────────────
# Gates and fallbacks
# ──────────────────────────────────────────────────────────────

class TestGates:
    async def test_invalid_coordinates(self, places, provider):
        result = await places.fetch_nearby_places(float("nan"), 0.0)
        assert result.places == []
        assert result.furthest_distance == 1000.0
        result = await places.fetch_nearby_places(95.0, 0.0)
        assert result.places == []
        assert provider.nearby_calls == []

    async def test_unauthenticated_never_calls_provider(self, local, remote, provider, quota, connectivity, cfg, clock):
        cache = PlacesCache(
            session=Session(),
            local=local,
            remote=remote,
            provider=provider,
            quota=quota,
            connectivity=connectivity,
            cfg=cfg,
            clock=clock,
        )
        provider.pages = [westminster_page()]
        result = await cache.fetch_nearby_places(*BIG_BEN)
        assert result.places == []
        assert provider.nearby_calls == []

    async def test_offline_serves_memory_sorted_without_provider(self, places, provider, remote, connectivity):
        seed_remote_area(remote, 51.5, -0.12, [
            summary("far", "Far Museum", 51.503, -0.12),
            summary("near", "Near Museum", 51.5001, -0.12),
        ])
        await places.fetch_nearby_places(51.5, -0.12)
        assert provider.nearby_calls == []

        connectivity.online = False
        result = await places.fetch_nearby_places(51.52, -0.12)
        assert provider.nearby_calls == []
        assert [p.place_id for p in result.places] == ["far", "near"]
        assert result.places[0].distance < result.places[1].distance

    async def test_quota_denied_serves_memory_even_when_far(self, places, provider, remote, quota):
        seed_remote_area(remote, 51.5, -0.12, [summary("a", "A Museum", 51.5, -0.12)])
        await places.fetch_nearby_places(51.5, -0.12)
        await exhaust_quota(quota)

        result = await places.fetch_nearby_places(51.55, -0.12)
        assert [p.place_id for p in result.places] == ["a"]
        assert result.places[0].distance == pytest.approx(haversine_m(51.55, -0.12, 51.5, -0.12))
        assert provider.nearby_calls == []

    async def test_quota_denied_reloads_local(self, places, provider, local, quota, clock):
        entry = CacheEntry(
            area_key="48.86_2.35", center_lat=48.8566, center_lng=2.3522, place_ids=["louvre"],
            created_at=clock(), expires_at=clock() + DAY_MS, radius=1000.0,
        )
        local.put(PLACES_CACHE_KEY, {
            "entry": entry.model_dump(),
            "places": [summary("louvre", "Louvre Museum", 48.8606, 2.3376).model_dump()],
        })
        await exhaust_quota(quota)
        result = await places.fetch_nearby_places(51.5, -0.12)
        assert [p.place_id for p in result.places] == ["louvre"]


# ──────────────────────────────────────────────────────────────
# Cache tiers
# ──────────────────────────────────────────────────────────────

class TestTiers:
    async def test_valid_local_entry_is_promoted(self, places, provider, local, clock):
        entry = CacheEntry(
            area_key=area_key(51.5, -0.12), center_lat=51.5, center_lng=-0.12, place_ids=["a"],
            created_at=clock(), expires_at=clock() + DAY_MS, radius=1000.0,
        )
        local.put(PLACES_CACHE_KEY, {"entry": entry.model_dump(), "places": [summary("a", "A Museum", 51.5, -0.12).model_dump()]})
        result = await places.fetch_nearby_places(51.5005, -0.12)
        assert [p.place_id for p in result.places] == ["a"]
        assert provider.nearby_calls == []

    async def test_expired_local_entry_is_ignored(self, places, provider, local, clock):
        entry = CacheEntry(
            area_key=area_key(51.5, -0.12), center_lat=51.5, center_lng=-0.12, place_ids=["a"],
            created_at=clock() - 4 * DAY_MS, expires_at=clock() - DAY_MS, radius=1000.0,
        )
        local.put(PLACES_CACHE_KEY, {"entry": entry.model_dump(), "places": [summary("a", "A Museum", 51.5, -0.12).model_dump()]})
        provider.pages = [westminster_page()]
        await places.fetch_nearby_places(51.5, -0.12)
        assert len(provider.nearby_calls) == 1

    async def test_remote_neighbour_cell_hit(self, places, provider, remote):
        # centre falls in cell 51.50, query in 51.51; 22 m apart
        seed_remote_area(remote, 51.5049, -0.12, [summary("a", "A Museum", 51.5049, -0.12)])
        assert area_key(51.5051, -0.12) != area_key(51.5049, -0.12)

        result = await places.fetch_nearby_places(51.5051, -0.12)
        assert [p.place_id for p in result.places] == ["a"]
        assert provider.nearby_calls == []
        assert ("batch_get", PLACE_CACHES) in remote.calls

    async def test_remote_read_failure_fails_closed(self, places, provider, remote):
        provider.pages = [westminster_page()]
        remote.fail_reads = True
        # quota record unreadable: ledger refuses, memory is empty
        result = await places.fetch_nearby_places(*BIG_BEN)
        assert result.places == []
        assert provider.nearby_calls == []

    async def test_memory_round_trip(self, places, provider):
        provider.pages = [westminster_page()]
        first = await places.fetch_nearby_places(*BIG_BEN)
        second = await places.fetch_nearby_places(51.5009, -0.1240)

        a = {p.place_id: p for p in first.places}
        b = {p.place_id: p for p in second.places}
        assert a.keys() == b.keys()
        for pid in a:
            assert a[pid].model_dump(exclude={"distance"}) == b[pid].model_dump(exclude={"distance"})
            assert b[pid].distance == pytest.approx(haversine_m(51.5009, -0.1240, b[pid].lat, b[pid].lng))


class TestRestart:
    def seed_local(self, local, clock):
        entry = CacheEntry(
            area_key=area_key(51.5, -0.12), center_lat=51.5, center_lng=-0.12, place_ids=["a"],
            created_at=clock(), expires_at=clock() + DAY_MS, radius=1000.0,
        )
        local.put(PLACES_CACHE_KEY, {"entry": entry.model_dump(), "places": [summary("a", "A Museum", 51.5, -0.12).model_dump()]})

    def fresh_cache(self, session, local, remote, provider, quota, connectivity, cfg, clock):
        return PlacesCache(
            session=session, local=local, remote=remote, provider=provider,
            quota=quota, connectivity=connectivity, cfg=cfg, clock=clock,
        )

    async def test_offline_serves_persisted_area(self, session, local, remote, provider, quota, connectivity, cfg, clock):
        self.seed_local(local, clock)
        connectivity.online = False
        cache = self.fresh_cache(session, local, remote, provider, quota, connectivity, cfg, clock)

        result = await cache.fetch_nearby_places(51.5, -0.12)

        assert [p.place_id for p in result.places] == ["a"]
        assert provider.nearby_calls == []

    async def test_signed_out_serves_persisted_area(self, local, remote, provider, quota, connectivity, cfg, clock):
        self.seed_local(local, clock)
        cache = self.fresh_cache(Session(), local, remote, provider, quota, connectivity, cfg, clock)

        result = await cache.fetch_nearby_places(51.5, -0.12)

        assert [p.place_id for p in result.places] == ["a"]
        assert remote.calls == []

    async def test_expired_persisted_area_is_not_loaded(self, session, local, remote, provider, quota, connectivity, cfg, clock):
        self.seed_local(local, clock)
        clock.advance(2 * DAY_MS)
        connectivity.online = False
        cache = self.fresh_cache(session, local, remote, provider, quota, connectivity, cfg, clock)

        result = await cache.fetch_nearby_places(51.5, -0.12)
        assert result.places == []

    async def test_cleared_cache_stays_empty(self, places, local, connectivity, clock):
        self.seed_local(local, clock)
        places.clear_places_cache()
        connectivity.online = False
        result = await places.fetch_nearby_places(51.5, -0.12)
        assert result.places == []


def test_locality_validity_matches_manual_check():
    rng = random.Random(42)
    now = T0
    for _ in range(500):
        c_lat = rng.uniform(-80, 80)
        c_lng = rng.uniform(-179, 179)
        q_lat = c_lat + rng.uniform(-0.01, 0.01)
        q_lng = c_lng + rng.uniform(-0.01, 0.01)
        expires = now + rng.randint(-DAY_MS, DAY_MS)
        entry = CacheEntry(
            area_key=area_key(c_lat, c_lng), center_lat=c_lat, center_lng=c_lng,
            place_ids=[], created_at=now - DAY_MS, expires_at=expires, radius=rng.uniform(100, 5000),
        )
        manual = now < expires and haversine_m(c_lat, c_lng, q_lat, q_lng) <= 500.0
        assert entry_is_valid(entry, q_lat, q_lng, now, 500.0) == manual


# ──────────────────────────────────────────────────────────────
# Details
# ──────────────────────────────────────────────────────────────

def details_raw(pid="p1", name="Tate Modern"):
    r = raw_place(pid, name, 51.5076, -0.0994, types=["museum", "tourist_attraction"], rating=4.6, ratings=80_000)
    r.update({
        "formatted_address": "Bankside, London SE1 9TG",
        "website": "https://www.tate.org.uk",
        "formatted_phone_number": "020 7887 8888",
        "url": "https://maps.google.com/?cid=1",
        "opening_hours": {"open_now": True},
        "reviews": [{"author_name": "Ann", "rating": 5, "text": "Great", "time": 1}],
        "editorial_summary": {"overview": "Modern art in a former power station."},
    })
    return r


class TestDetails:
    async def test_concurrent_requests_share_one_provider_call(self, places, provider):
        provider.details["p1"] = details_raw()
        provider.details_gate = asyncio.Event()

        t1 = asyncio.ensure_future(places.fetch_place_details_on_demand("p1"))
        t2 = asyncio.ensure_future(places.fetch_place_details_on_demand("p1"))
        for _ in range(10):
            await asyncio.sleep(0)
        provider.details_gate.set()
        a, b = await asyncio.gather(t1, t2)

        assert provider.details_calls == ["p1"]
        assert a is not None and a == b
        assert a.editorial_summary == "Modern art in a former power station."
        assert a.reviews[0].author_name == "Ann"

    async def test_persists_details_everywhere(self, places, provider, local, remote, clock, cfg):
        provider.details["p1"] = details_raw()
        d = await places.fetch_place_details_on_demand("p1")
        assert d.fetched_at == clock()
        assert d.expires_at == clock() + cfg.details_ttl_s * 1000
        assert "p1" in local.get(PLACE_DETAILS_CACHE_KEY)
        assert (PLACE_DETAILS, "p1") in remote.docs
        assert (PLACES, "p1") in remote.docs

        # fresh memory copy: no second provider call
        await places.fetch_place_details_on_demand("p1")
        assert provider.details_calls == ["p1"]

    async def test_stale_remote_details_refresh_in_background(self, places, provider, remote, clock):
        old = details_raw(name="Old Name")
        stale = result_to_details(old, fetched_at=clock() - 31 * DAY_MS, expires_at=clock() - 24 * DAY_MS)
        remote.put(PLACE_DETAILS, "p1", stale.model_dump())
        provider.details["p1"] = details_raw(name="New Name")

        d = await places.fetch_place_details_on_demand("p1")
        assert d.name == "Old Name"

        await places.drain()
        assert provider.details_calls == ["p1"]
        assert remote.docs[(PLACE_DETAILS, "p1")]["name"] == "New Name"

    async def test_expired_memory_record_is_the_last_resort(self, places, provider, clock, connectivity):
        provider.details["p1"] = details_raw()
        await places.fetch_place_details_on_demand("p1")
        clock.advance(8 * DAY_MS)
        connectivity.online = False
        places.remote = None

        d = await places.fetch_place_details_on_demand("p1")
        assert d is not None
        assert not d.is_fresh(clock())

    async def test_fetch_place_by_id_falls_back_to_summary(self, places, provider, remote):
        seed_remote_area(remote, 51.5, -0.12, [summary("a", "A Museum", 51.5, -0.12)])
        await places.fetch_nearby_places(51.5, -0.12)
        # provider has no details for "a"
        d = await places.fetch_place_by_id("a")
        assert d is not None
        assert d.name == "A Museum"
        assert await places.fetch_place_by_id("missing") is None


# ──────────────────────────────────────────────────────────────
# Maintenance
# ──────────────────────────────────────────────────────────────

class TestMaintenance:
    async def test_cleanup_is_throttled(self, places, local, clock):
        assert await places.cleanup_expired()
        assert local.get(LAST_CLEANUP_KEY) == clock()
        assert not await places.cleanup_expired()
        clock.advance(DAY_MS + 1)
        assert await places.cleanup_expired()

    async def test_cleanup_prunes_remote(self, places, remote, clock):
        remote.put(PLACE_CACHES, "old", {"x": 1}, expires_at=clock() - 1)
        remote.put(PLACE_CACHES, "new", {"x": 1}, expires_at=clock() + DAY_MS)
        remote.put(PLACE_DETAILS, "ancient", {"x": 1}, updated_at=clock() - 200 * DAY_MS)
        remote.put(PLACE_DETAILS, "recent", {"x": 1}, updated_at=clock() - 10 * DAY_MS)

        await places.cleanup_expired(force=True)
        assert remote.ids(PLACE_CACHES) == ["new"]
        assert remote.ids(PLACE_DETAILS) == ["recent"]

    async def test_cleanup_prunes_expired_local_details(self, places, provider, local, clock):
        provider.details["p1"] = details_raw()
        await places.fetch_place_details_on_demand("p1")
        clock.advance(8 * DAY_MS)
        await places.cleanup_expired(force=True)
        assert local.get(PLACE_DETAILS_CACHE_KEY) == {}

    async def test_stats_and_clear(self, places, provider, local):
        provider.pages = [westminster_page()]
        provider.details["p1"] = details_raw()
        await places.fetch_nearby_places(*BIG_BEN)
        await places.fetch_place_details_on_demand("p1")

        stats = await places.get_cache_stats()
        assert stats.memory_cache.places == 2
        assert stats.memory_cache.cache_center == area_key(*BIG_BEN)
        assert stats.memory_cache.age_in_days == 0
        assert stats.details_cache.count == 1
        assert stats.details_cache.fresh_count == 1
        assert stats.remote_cache.areas == 1
        assert stats.remote_cache.permanent_details == 1

        assert places.clear_places_cache()
        assert local.get(PLACES_CACHE_KEY) is None
        assert local.get(PLACE_DETAILS_CACHE_KEY) is None
        stats = await places.get_cache_stats()
        assert stats.memory_cache.places == 0
        assert stats.details_cache.count == 0
