"""
Pytest fixtures for the discovery services.

Remote store, Google providers and the connectivity probe are in-memory
fakes; the local tier is a real SQLite :memory: database.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from discovery.core.contracts import Coord
from discovery.core.session import Session
from discovery.core.settings import Settings
from discovery.core.storage import LocalStore, connect_sqlite, ensure_schema
from discovery.services.directions import ProviderRoute
from discovery.services.google_places import NearbyPage
from discovery.services.location import LocationService
from discovery.services.places import PlacesCache
from discovery.services.quota import QuotaLedger
from discovery.services.routes import RouteCache
from discovery.services.visited import VisitedStatusCache

# 2024-06-01T12:00:00Z
T0 = 1_717_243_200_000


# ──────────────────────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeToday:
    def __init__(self, day: str = "2024-06-01"):
        self.day = day

    def __call__(self) -> str:
        return self.day


class FakeRemoteStore:
    """Same surface as SupaDocumentStore, backed by a dict."""

    def __init__(self):
        self.docs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.expires: Dict[Tuple[str, str], Optional[int]] = {}
        self.updated: Dict[Tuple[str, str], int] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.calls: List[Tuple[str, str]] = []

    def _check(self, kind: str) -> None:
        if kind == "read" and self.fail_reads:
            raise RuntimeError("remote read failed")
        if kind == "write" and self.fail_writes:
            raise RuntimeError("remote write failed")

    def put(self, collection: str, doc_id: str, data: Dict[str, Any], expires_at: Optional[int] = None, updated_at: int = T0):
        self.docs[(collection, doc_id)] = data
        self.expires[(collection, doc_id)] = expires_at
        self.updated[(collection, doc_id)] = updated_at

    def ids(self, collection: str) -> List[str]:
        return [d for (c, d) in self.docs if c == collection]

    async def get_doc(self, collection, doc_id):
        self.calls.append(("get_doc", collection))
        self._check("read")
        return self.docs.get((collection, doc_id))

    async def batch_get(self, collection, doc_ids):
        self.calls.append(("batch_get", collection))
        self._check("read")
        return {i: self.docs[(collection, i)] for i in doc_ids if (collection, i) in self.docs}

    async def list_docs(self, collection, *, limit=1000):
        self.calls.append(("list_docs", collection))
        self._check("read")
        return [v for (c, _), v in self.docs.items() if c == collection][:limit]

    async def count(self, collection):
        self._check("read")
        return len(self.ids(collection))

    async def set_doc(self, collection, doc_id, data, *, expires_at=None):
        self.calls.append(("set_doc", collection))
        self._check("write")
        self.put(collection, doc_id, data, expires_at)

    async def batch_set(self, collection, docs, *, expires_at=None):
        self.calls.append(("batch_set", collection))
        self._check("write")
        for doc_id, data in docs:
            self.put(collection, doc_id, data, expires_at)
        return len(docs)

    async def delete_doc(self, collection, doc_id):
        self._check("write")
        self.docs.pop((collection, doc_id), None)

    async def delete_expired(self, collection, now):
        self._check("write")
        for key in [k for k in self.docs if k[0] == collection]:
            exp = self.expires.get(key)
            if exp is not None and exp < now:
                del self.docs[key]

    async def delete_older_than(self, collection, cutoff):
        self._check("write")
        for key in [k for k in self.docs if k[0] == collection]:
            if self.updated.get(key, 0) < cutoff:
                del self.docs[key]


def raw_place(
    place_id: str,
    name: str,
    lat: float,
    lng: float,
    *,
    types: List[str] | None = None,
    rating: float | None = None,
    ratings: int | None = None,
    vicinity: str = "",
    photos: int = 0,
) -> Dict[str, Any]:
    """A Google nearbysearch result dict."""
    r: Dict[str, Any] = {
        "place_id": place_id,
        "name": name,
        "vicinity": vicinity,
        "geometry": {"location": {"lat": lat, "lng": lng}},
        "types": types or ["point_of_interest", "establishment"],
        "photos": [{"photo_reference": f"{place_id}-photo-{i}"} for i in range(photos)],
    }
    if rating is not None:
        r["rating"] = rating
    if ratings is not None:
        r["user_ratings_total"] = ratings
    return r


class FakePlacesProvider:
    def __init__(self):
        self.pages: List[NearbyPage] = []
        self.details: Dict[str, Dict[str, Any]] = {}
        self.nearby_calls: List[Optional[str]] = []
        self.details_calls: List[str] = []
        self.details_gate: Optional[asyncio.Event] = None
        # page index -> exception raised for that call
        self.errors: Dict[int, Exception] = {}

    async def nearby_search(self, lat, lng, radius_m, *, page_token=None):
        idx = len(self.nearby_calls)
        self.nearby_calls.append(page_token)
        if idx in self.errors:
            raise self.errors[idx]
        if idx < len(self.pages):
            return self.pages[idx]
        return NearbyPage(status="ZERO_RESULTS")

    async def place_details(self, place_id):
        self.details_calls.append(place_id)
        if self.details_gate is not None:
            await self.details_gate.wait()
        return self.details.get(place_id)


class FakeDirections:
    def __init__(self):
        self.calls: List[Tuple[str, str, str]] = []
        self.routes: Dict[str, ProviderRoute] = {}
        self.error: Optional[Exception] = None

    async def route(self, origin, destination, mode):
        self.calls.append((origin, destination, mode))
        if self.error is not None:
            raise self.error
        return self.routes.get(mode)


def provider_route(distance_m: float, points: int = 3) -> ProviderRoute:
    path = [Coord(lat=51.5 + i * 0.001, lng=-0.1) for i in range(points)]
    return ProviderRoute(path=path, duration="10 mins", distance_m=distance_m, duration_s=600.0)


class FakeConnectivity:
    def __init__(self, online: bool = True):
        self.online = online
        self.calls = 0

    async def is_online(self) -> bool:
        self.calls += 1
        return self.online


async def no_sleep(_seconds: float) -> None:
    return None


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def cfg() -> Settings:
    return Settings().model_copy(update={"places_page_delay_s": 0.0, "visited_retry_delay_s": 0.0})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def today() -> FakeToday:
    return FakeToday()


@pytest.fixture
def local() -> LocalStore:
    conn = connect_sqlite(":memory:")
    ensure_schema(conn)
    yield LocalStore(conn)
    conn.close()


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def session() -> Session:
    return Session("user-1")


@pytest.fixture
def provider() -> FakePlacesProvider:
    return FakePlacesProvider()


@pytest.fixture
def directions() -> FakeDirections:
    return FakeDirections()


@pytest.fixture
def connectivity() -> FakeConnectivity:
    return FakeConnectivity()


@pytest.fixture
def quota(session, local, remote, cfg, today, clock) -> QuotaLedger:
    return QuotaLedger(session=session, local=local, remote=remote, cfg=cfg, today=today, clock=clock)


@pytest.fixture
def places(session, local, remote, provider, quota, connectivity, cfg, clock) -> PlacesCache:
    return PlacesCache(
        session=session,
        local=local,
        remote=remote,
        provider=provider,
        quota=quota,
        connectivity=connectivity,
        cfg=cfg,
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def routes(session, local, remote, directions, quota, cfg, clock) -> RouteCache:
    import random

    return RouteCache(
        session=session,
        local=local,
        remote=remote,
        directions=directions,
        quota=quota,
        cfg=cfg,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def visited(session, local, remote, cfg, clock) -> VisitedStatusCache:
    return VisitedStatusCache(session=session, local=local, remote=remote, cfg=cfg, clock=clock, sleep=no_sleep)


@pytest.fixture
def location(session, local, remote, places, visited, cfg, clock) -> LocationService:
    return LocationService(
        session=session, local=local, places=places, visited=visited, cfg=cfg, remote=remote, clock=clock,
    )


async def exhaust_quota(quota: QuotaLedger) -> None:
    while await quota.record_api_call("places"):
        pass
