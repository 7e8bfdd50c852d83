from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from discovery.core.advisory import advisory_read, advisory_read_async, advisory_write, advisory_write_async
from discovery.core.contracts import (
    CacheEntry,
    CacheStats,
    DetailsCacheStats,
    MemoryCacheStats,
    NearbyPlacesResult,
    PlaceDetails,
    PlaceSummary,
    RemoteCacheStats,
)
from discovery.core.geo import haversine_m, is_valid_coord
from discovery.core.inflight import InFlightRegistry
from discovery.core.keying import area_key, neighbour_keys
from discovery.core.session import Session
from discovery.core.settings import Settings
from discovery.core.storage import LAST_CLEANUP_KEY, PLACE_DETAILS_CACHE_KEY, PLACES_CACHE_KEY, LocalStore
from discovery.core.time import now_ms
from discovery.services.connectivity import ConnectivityProbe
from discovery.services.google_places import GooglePlacesClient, result_to_details, result_to_summary
from discovery.services.quota import QuotaLedger
from discovery.services.remote_store import PLACE_CACHES, PLACE_DETAILS, PLACES, SupaDocumentStore
from discovery.services.scoring import calculate_tourism_score, score_and_filter

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


# ──────────────────────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────────────────────

def entry_is_valid(entry: CacheEntry, lat: float, lng: float, now: int, recache_distance_m: float) -> bool:
    """An area entry answers a query only while unexpired and within the re-cache distance of its centre."""
    if now >= entry.expires_at:
        return False
    return haversine_m(entry.center_lat, entry.center_lng, lat, lng) <= recache_distance_m


def with_distances(places: List[PlaceSummary], lat: float, lng: float, limit: int) -> List[PlaceSummary]:
    """Copies with distance from (lat, lng), nearest first, capped at `limit`."""
    out = [p.model_copy(update={"distance": haversine_m(lat, lng, p.lat, p.lng)}) for p in places]
    out.sort(key=lambda p: p.distance)
    return out[: max(0, limit)]


def furthest_distance(places: List[PlaceSummary], padding_m: float, floor_m: float) -> float:
    dists = [p.distance for p in places if p.distance is not None]
    if not dists:
        return floor_m
    return max(floor_m, max(dists) + padding_m)


def _stored(p: PlaceSummary) -> PlaceSummary:
    # per-caller fields are never persisted
    return p.model_copy(update={"distance": None, "is_visited": False})


class PlacesCache:
    """
    Nearby tourist places around a coordinate.

    Read order (short-circuits on the first valid hit):
      1) signed out or offline: memory only
      2) memory area entry, then the persisted local entry
      3) remote placeCaches/{area_key}, else the closest valid neighbour cell
      4) quota denied: whatever memory or local storage holds
      5) Google nearby search (paged), scored, filtered, written through

    Details live in a separate, longer-lived map keyed by place_id.
    Concurrent detail requests for one id share a single provider call.
    """

    def __init__(
        self,
        *,
        session: Session,
        local: LocalStore,
        remote: Optional[SupaDocumentStore],
        provider: GooglePlacesClient,
        quota: QuotaLedger,
        connectivity: Optional[ConnectivityProbe],
        cfg: Settings,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.local = local
        self.remote = remote
        self.provider = provider
        self.quota = quota
        self.connectivity = connectivity
        self.cfg = cfg
        self._clock = clock
        self._sleep = sleep

        # memory tier: one area entry + its places
        self._entry: Optional[CacheEntry] = None
        self._places: List[PlaceSummary] = []
        self._area_hydrated = False

        self._details: Dict[str, PlaceDetails] = {}
        self._details_hydrated = False

        self._inflight = InFlightRegistry()
        self._background: Set[asyncio.Task] = set()

    # ──────────────────────────────────────────────────────────
    # Small helpers
    # ──────────────────────────────────────────────────────────

    @property
    def max_results(self) -> int:
        return int(self.cfg.places_max_results)

    def _remote_enabled(self) -> bool:
        return self.remote is not None and self.session.is_authenticated

    async def _online(self) -> bool:
        if self.connectivity is None:
            return True
        return await self.connectivity.is_online()

    def _result(self, places: List[PlaceSummary]) -> NearbyPlacesResult:
        return NearbyPlacesResult(
            places=places,
            furthest_distance=furthest_distance(
                places,
                float(self.cfg.places_furthest_padding_m),
                float(self.cfg.places_min_furthest_m),
            ),
        )

    def _empty(self) -> NearbyPlacesResult:
        return self._result([])

    def _serve_memory(self, lat: float, lng: float) -> NearbyPlacesResult:
        return self._result(with_distances(self._places, lat, lng, self.max_results))

    def _entry_valid(self, entry: Optional[CacheEntry], lat: float, lng: float) -> bool:
        if entry is None:
            return False
        return entry_is_valid(entry, lat, lng, self._clock(), float(self.cfg.places_recache_distance_m))

    def _spawn(self, coro, label: str) -> None:
        async def _runner():
            try:
                await coro
            except Exception as e:
                logger.warning("[places] background %s failed: %s", label, e)

        task = asyncio.ensure_future(_runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ──────────────────────────────────────────────────────────
    # Local tier
    # ──────────────────────────────────────────────────────────

    def _load_local_area(self) -> Tuple[Optional[CacheEntry], List[PlaceSummary]]:
        raw = advisory_read("places local load", lambda: self.local.get(PLACES_CACHE_KEY))
        if not raw or not raw.get("entry"):
            return None, []
        try:
            entry = CacheEntry.model_validate(raw["entry"])
            places = [PlaceSummary.model_validate(p) for p in raw.get("places") or []]
        except ValueError as e:
            logger.warning("[places] discarding unreadable local cache: %s", e)
            return None, []
        return entry, places

    def _save_local_area(self) -> bool:
        if self._entry is None:
            return True
        blob = {
            "entry": self._entry.model_dump(),
            "places": [p.model_dump() for p in self._places],
        }
        return advisory_write("places local save", lambda: self.local.put(PLACES_CACHE_KEY, blob))

    def _hydrate_area(self) -> None:
        if self._area_hydrated:
            return
        self._area_hydrated = True
        if self._entry is not None:
            return
        entry, places = self._load_local_area()
        if entry is not None and self._clock() < entry.expires_at:
            self._promote(entry, places, persist_local=False)
            logger.info("[places] hydrated %d places from local storage", len(places))

    def _hydrate_details(self) -> None:
        if self._details_hydrated:
            return
        self._details_hydrated = True
        raw = advisory_read("details local load", lambda: self.local.get(PLACE_DETAILS_CACHE_KEY)) or {}
        for pid, doc in raw.items():
            try:
                self._details.setdefault(pid, PlaceDetails.model_validate(doc))
            except ValueError:
                continue

    def _save_local_details(self) -> bool:
        blob = {pid: d.model_dump() for pid, d in self._details.items()}
        return advisory_write("details local save", lambda: self.local.put(PLACE_DETAILS_CACHE_KEY, blob))

    def _promote(self, entry: CacheEntry, places: List[PlaceSummary], *, persist_local: bool) -> None:
        self._entry = entry
        self._places = [_stored(p) for p in places]
        if persist_local:
            self._save_local_area()

    # ──────────────────────────────────────────────────────────
    # Remote tier
    # ──────────────────────────────────────────────────────────

    async def _remote_area(self, lat: float, lng: float) -> Optional[Tuple[CacheEntry, List[PlaceSummary]]]:
        key = area_key(lat, lng)
        doc = await self.remote.get_doc(PLACE_CACHES, key)

        candidates: List[CacheEntry] = []
        if doc:
            candidates.append(CacheEntry.model_validate(doc))
        if not any(self._entry_valid(c, lat, lng) for c in candidates):
            keys = neighbour_keys(lat, lng, float(self.cfg.places_recache_distance_m))
            docs = await self.remote.batch_get(PLACE_CACHES, keys)
            candidates = [CacheEntry.model_validate(d) for d in docs.values()]

        valid = [c for c in candidates if self._entry_valid(c, lat, lng)]
        if not valid:
            return None
        best = min(valid, key=lambda c: haversine_m(c.center_lat, c.center_lng, lat, lng))

        docs = await self.remote.batch_get(PLACES, best.place_ids)
        places = [PlaceSummary.model_validate(docs[pid]) for pid in best.place_ids if pid in docs]
        if not places:
            return None
        logger.info("[places] remote hit area=%s places=%d", best.area_key, len(places))
        return best, places

    async def _write_remote_area(self, entry: CacheEntry, places: List[PlaceSummary]) -> None:
        await advisory_write_async(
            "placeCaches remote save",
            lambda: self.remote.set_doc(PLACE_CACHES, entry.area_key, entry.model_dump(), expires_at=entry.expires_at),
        )
        await advisory_write_async(
            "places remote save",
            lambda: self.remote.batch_set(
                PLACES,
                [(p.place_id, _stored(p).model_dump()) for p in places],
                expires_at=entry.expires_at,
            ),
        )

    # ──────────────────────────────────────────────────────────
    # Provider tier
    # ──────────────────────────────────────────────────────────

    async def _provider_search(self, lat: float, lng: float) -> Optional[List[PlaceSummary]]:
        """Paged nearby search. None when not even one page completed."""
        radius = int(self.cfg.places_search_radius_m)
        raw: List[dict] = []
        completed = False
        token: Optional[str] = None

        for page_no in range(int(self.cfg.places_max_pages)):
            if page_no > 0:
                if not token:
                    break
                # next_page_token is not valid until a short while after it is issued
                await self._sleep(float(self.cfg.places_page_delay_s))
            if not await self.quota.record_api_call("places"):
                logger.info("[places] quota exhausted after %d page(s)", page_no)
                break

            try:
                page = await self.provider.nearby_search(lat, lng, radius, page_token=token)
            except Exception as e:
                logger.warning("[places] nearby page %d failed, keeping earlier pages: %s", page_no + 1, e)
                break
            if page.status == "ZERO_RESULTS":
                completed = True
                break
            if not page.ok:
                break
            completed = True
            raw.extend(page.results)
            token = page.next_page_token

        if not completed:
            return None

        seen: Set[str] = set()
        out: List[PlaceSummary] = []
        for r in raw:
            p = result_to_summary(r)
            if p is None or p.place_id in seen:
                continue
            seen.add(p.place_id)
            out.append(p)
        return out

    async def _write_through(self, lat: float, lng: float, places: List[PlaceSummary]) -> None:
        now = self._clock()
        entry = CacheEntry(
            area_key=area_key(lat, lng),
            center_lat=lat,
            center_lng=lng,
            place_ids=[p.place_id for p in places],
            created_at=now,
            expires_at=now + int(self.cfg.places_cache_ttl_s) * 1000,
            radius=float(self.cfg.places_search_radius_m),
        )
        self._promote(entry, places, persist_local=True)
        if self._remote_enabled():
            await self._write_remote_area(entry, places)

    # ──────────────────────────────────────────────────────────
    # Nearby
    # ──────────────────────────────────────────────────────────

    async def fetch_nearby_places(self, lat: float, lng: float, force_refresh: bool = False) -> NearbyPlacesResult:
        if not is_valid_coord(lat, lng):
            logger.warning("[places] invalid coordinates lat=%r lng=%r", lat, lng)
            return self._empty()
        lat = float(lat)
        lng = float(lng)
        try:
            return await self._fetch_nearby(lat, lng, force_refresh)
        except Exception as e:
            logger.error("[places] nearby lookup failed, serving memory: %s", e)
            return self._serve_memory(lat, lng)

    async def _fetch_nearby(self, lat: float, lng: float, force_refresh: bool) -> NearbyPlacesResult:
        self._hydrate_area()
        if not self.session.is_authenticated:
            return self._serve_memory(lat, lng)
        if not await self._online():
            logger.info("[places] offline, serving memory (%d places)", len(self._places))
            return self._serve_memory(lat, lng)

        if not force_refresh:
            if self._entry_valid(self._entry, lat, lng):
                return self._serve_memory(lat, lng)

            entry, places = self._load_local_area()
            if self._entry_valid(entry, lat, lng):
                logger.info("[places] local hit area=%s", entry.area_key)
                self._promote(entry, places, persist_local=False)
                return self._serve_memory(lat, lng)

            if self._remote_enabled():
                hit = await advisory_read_async("places remote load", lambda: self._remote_area(lat, lng))
                if hit:
                    self._promote(hit[0], hit[1], persist_local=True)
                    return self._serve_memory(lat, lng)

        if not await self.quota.has_quota_available("places"):
            if not self._places:
                entry, places = self._load_local_area()
                if entry is not None:
                    self._promote(entry, places, persist_local=False)
            logger.info("[places] quota exhausted, serving %d cached places", len(self._places))
            return self._serve_memory(lat, lng)

        fetched = await self._provider_search(lat, lng)
        if fetched is None:
            return self._serve_memory(lat, lng)

        kept = with_distances(score_and_filter(fetched), lat, lng, self.max_results)
        logger.info("[places] provider returned %d, kept %d", len(fetched), len(kept))
        await self._write_through(lat, lng, kept)
        return self._result(kept)

    # ──────────────────────────────────────────────────────────
    # Details
    # ──────────────────────────────────────────────────────────

    def _details_expiry(self, now: int) -> int:
        return now + int(self.cfg.details_ttl_s) * 1000

    async def _provider_details(self, place_id: str) -> Optional[PlaceDetails]:
        if not self.session.is_authenticated or not await self._online():
            return None
        if not await self.quota.has_quota_available("places"):
            return None
        if not await self.quota.record_api_call("places"):
            return None

        raw = await self.provider.place_details(place_id)
        if raw is None:
            return None
        now = self._clock()
        details = result_to_details(raw, fetched_at=now, expires_at=self._details_expiry(now))
        if details is None:
            return None
        details = details.model_copy(update={"tourism_score": calculate_tourism_score(details)})
        await self._store_details(details)
        return details

    async def _store_details(self, details: PlaceDetails) -> None:
        self._details[details.place_id] = details
        self._save_local_details()
        if not self._remote_enabled():
            return
        # permanent copy: no expires_at, aged out by cleanup_expired
        await advisory_write_async(
            "placeDetails remote save",
            lambda: self.remote.set_doc(PLACE_DETAILS, details.place_id, details.model_dump()),
        )
        summary = PlaceSummary.model_validate(_stored(details).model_dump(include=set(PlaceSummary.model_fields)))
        await advisory_write_async(
            "places remote save",
            lambda: self.remote.set_doc(
                PLACES,
                summary.place_id,
                summary.model_dump(),
                expires_at=self._clock() + int(self.cfg.places_cache_ttl_s) * 1000,
            ),
        )

    async def _refresh_details(self, place_id: str) -> None:
        d = await self._inflight.run(f"refresh:{place_id}", lambda: self._provider_details(place_id))
        if d is not None:
            logger.info("[places] refreshed stale details for %s", place_id)

    async def _load_details(self, place_id: str) -> Optional[PlaceDetails]:
        self._hydrate_details()
        now = self._clock()

        mem = self._details.get(place_id)
        if mem is not None and mem.is_fresh(now):
            return mem

        if self._remote_enabled():
            doc = await advisory_read_async(
                "placeDetails remote load",
                lambda: self.remote.get_doc(PLACE_DETAILS, place_id),
            )
            if doc:
                d = PlaceDetails.model_validate(doc)
                if now - d.fetched_at > int(self.cfg.details_refresh_after_s) * 1000:
                    self._spawn(self._refresh_details(place_id), f"details refresh {place_id}")
                d = d.model_copy(update={"expires_at": self._details_expiry(now)})
                self._details[place_id] = d
                self._save_local_details()
                return d

        fresh = await self._provider_details(place_id)
        if fresh is not None:
            return fresh
        if mem is not None:
            logger.info("[places] serving stale details for %s", place_id)
        return mem

    async def fetch_place_details_on_demand(self, place_id: str) -> Optional[PlaceDetails]:
        if not place_id:
            return None
        try:
            return await self._inflight.run(place_id, lambda: self._load_details(place_id))
        except Exception as e:
            logger.error("[places] details lookup failed for %s: %s", place_id, e)
            return self._details.get(place_id)

    async def fetch_place_by_id(self, place_id: str) -> Optional[PlaceDetails]:
        """Details when obtainable, else the summary we already hold, widened to PlaceDetails."""
        details = await self.fetch_place_details_on_demand(place_id)
        if details is not None:
            return details

        for p in self._places:
            if p.place_id == place_id:
                return PlaceDetails(**_stored(p).model_dump())

        if self._remote_enabled():
            doc = await advisory_read_async("places remote load", lambda: self.remote.get_doc(PLACES, place_id))
            if doc:
                return PlaceDetails(**PlaceSummary.model_validate(doc).model_dump())
        return None

    # ──────────────────────────────────────────────────────────
    # Maintenance
    # ──────────────────────────────────────────────────────────

    def clear_places_cache(self) -> bool:
        self._entry = None
        self._places = []
        self._area_hydrated = True
        self._details = {}
        self._details_hydrated = True
        ok_area = advisory_write("places local clear", lambda: self.local.delete(PLACES_CACHE_KEY))
        ok_details = advisory_write("details local clear", lambda: self.local.delete(PLACE_DETAILS_CACHE_KEY))
        logger.info("[places] cache cleared")
        return ok_area and ok_details

    async def get_cache_stats(self) -> CacheStats:
        self._hydrate_details()
        now = self._clock()

        mem = MemoryCacheStats(places=len(self._places))
        if self._entry is not None:
            mem.cache_center = self._entry.area_key
            mem.age_in_days = round((now - self._entry.created_at) / DAY_MS, 2)

        fresh = sum(1 for d in self._details.values() if d.is_fresh(now))
        details = DetailsCacheStats(
            count=len(self._details),
            fresh_count=fresh,
            stale_count=len(self._details) - fresh,
        )

        remote = None
        if self._remote_enabled():
            remote = RemoteCacheStats(
                areas=await advisory_read_async("placeCaches count", lambda: self.remote.count(PLACE_CACHES), 0),
                places=await advisory_read_async("places count", lambda: self.remote.count(PLACES), 0),
                permanent_details=await advisory_read_async(
                    "placeDetails count", lambda: self.remote.count(PLACE_DETAILS), 0
                ),
            )
        return CacheStats(memory_cache=mem, details_cache=details, remote_cache=remote)

    async def cleanup_expired(self, force: bool = False) -> bool:
        """Prune expired entries at most once per cleanup interval. True when a pass ran."""
        now = self._clock()
        last = advisory_read("cleanup marker load", lambda: self.local.get(LAST_CLEANUP_KEY)) or 0
        if not force and now - int(last) < int(self.cfg.cleanup_interval_s) * 1000:
            return False

        self._hydrate_details()
        expired = [pid for pid, d in self._details.items() if not d.is_fresh(now)]
        for pid in expired:
            del self._details[pid]
        if expired:
            self._save_local_details()

        entry, _ = self._load_local_area()
        if entry is not None and now >= entry.expires_at:
            advisory_write("places local clear", lambda: self.local.delete(PLACES_CACHE_KEY))
            if self._entry is not None and self._entry.area_key == entry.area_key:
                self._entry = None
                self._places = []

        if self._remote_enabled():
            cutoff = now - int(self.cfg.details_retention_s) * 1000
            await advisory_write_async("placeCaches cleanup", lambda: self.remote.delete_expired(PLACE_CACHES, now))
            await advisory_write_async("places cleanup", lambda: self.remote.delete_expired(PLACES, now))
            await advisory_write_async(
                "placeDetails cleanup", lambda: self.remote.delete_older_than(PLACE_DETAILS, cutoff)
            )

        advisory_write("cleanup marker save", lambda: self.local.put(LAST_CLEANUP_KEY, now))
        logger.info("[places] cleanup pass done (pruned %d local details)", len(expired))
        return True

    def flush(self) -> bool:
        ok = self._save_local_area()
        if self._details_hydrated:
            ok = self._save_local_details() and ok
        return ok

    async def drain(self) -> None:
        """Wait for background refreshes (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
