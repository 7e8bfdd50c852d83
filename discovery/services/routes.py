from __future__ import annotations

import logging
import random
from typing import Callable, Dict, Optional

from discovery.core.advisory import advisory_read, advisory_read_async, advisory_write, advisory_write_async
from discovery.core.contracts import Coord, RouteCacheStats, RouteRecord, RouteResult, TravelMode
from discovery.core.geo import haversine_m, interpolate, parse_coord_string
from discovery.core.keying import route_doc_id, route_memory_key
from discovery.core.session import Session
from discovery.core.settings import Settings
from discovery.core.storage import ROUTE_CACHE_KEY, LocalStore
from discovery.core.time import now_ms
from discovery.services.directions import GoogleDirections, format_duration
from discovery.services.quota import QuotaLedger
from discovery.services.remote_store import ROUTES, SupaDocumentStore

logger = logging.getLogger(__name__)

# auto-chosen walking may be corrected to driving once
MAX_MODE_ATTEMPTS = 2


def _to_result(rec: RouteRecord) -> RouteResult:
    return RouteResult(
        path=list(rec.path),
        duration=rec.duration,
        distance_km=rec.distance_km,
        mode=rec.mode,
        synthetic=rec.synthetic,
    )


class RouteCache:
    """
    (origin, destination, mode) → route, across memory, local, remote and the
    Directions API. When quota is gone or anything fails, a straight-line
    estimate is synthesized instead. Synthetic routes are tagged, never
    written to the shared remote tier, and replaced as soon as quota returns.
    """

    def __init__(
        self,
        *,
        session: Session,
        local: LocalStore,
        remote: Optional[SupaDocumentStore],
        directions: GoogleDirections,
        quota: QuotaLedger,
        cfg: Settings,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.local = local
        self.remote = remote
        self.directions = directions
        self.quota = quota
        self.cfg = cfg
        self._clock = clock
        self._rng = rng or random.Random()

        self._memory: Dict[str, RouteRecord] = {}
        self._hydrated = False

    # ──────────────────────────────────────────────────────────────
    # Tiers
    # ──────────────────────────────────────────────────────────────

    def _remote_enabled(self) -> bool:
        return self.remote is not None and self.session.is_authenticated

    def _hydrate(self) -> None:
        if self._hydrated:
            return
        self._hydrated = True
        raw = advisory_read("route local load", lambda: self.local.get(ROUTE_CACHE_KEY), default=None) or {}
        now = self._clock()
        for key, doc in raw.items():
            try:
                rec = RouteRecord.model_validate(doc)
            except ValueError:
                continue
            if now < rec.expires_at:
                self._memory[key] = rec
        if self._memory:
            logger.info("[routes] hydrated %d routes from local storage", len(self._memory))

    def _persist_local(self) -> bool:
        blob = {k: v.model_dump() for k, v in self._memory.items()}
        return advisory_write("route local save", lambda: self.local.put(ROUTE_CACHE_KEY, blob))

    async def _store(self, rec: RouteRecord) -> None:
        self._memory[route_memory_key(rec.origin, rec.destination, rec.mode)] = rec
        self._persist_local()
        if rec.synthetic or not self._remote_enabled():
            return
        doc_id = route_doc_id(rec.origin, rec.destination, rec.mode)
        await advisory_write_async(
            "route remote save",
            lambda: self.remote.set_doc(ROUTES, doc_id, rec.model_dump(), expires_at=rec.expires_at),
        )

    # ──────────────────────────────────────────────────────────────
    # Offline synthesis
    # ──────────────────────────────────────────────────────────────

    def _synthesize(
        self,
        origin: str,
        destination: str,
        o: tuple[float, float],
        d: tuple[float, float],
        mode: TravelMode,
    ) -> RouteRecord:
        a = Coord(lat=o[0], lng=o[1])
        b = Coord(lat=d[0], lng=d[1])
        n = int(self.cfg.route_offline_intermediate_points)
        jitter = float(self.cfg.route_offline_jitter_deg)

        path = [a]
        for i in range(1, n + 1):
            p = interpolate(a, b, i / (n + 1))
            path.append(
                Coord(
                    lat=p.lat + self._rng.uniform(-jitter, jitter),
                    lng=p.lng + self._rng.uniform(-jitter, jitter),
                )
            )
        path.append(b)

        distance_km = haversine_m(o[0], o[1], d[0], d[1]) / 1000.0
        speed = self.cfg.route_walking_speed_kmh if mode == "walking" else self.cfg.route_driving_speed_kmh
        now = self._clock()
        return RouteRecord(
            origin=origin,
            destination=destination,
            mode=mode,
            path=path,
            duration=format_duration(distance_km / speed * 3600.0),
            distance_km=round(distance_km, 2),
            created_at=now,
            expires_at=now + int(self.cfg.route_cache_ttl_s) * 1000,
            synthetic=True,
        )

    async def _offline(self, origin, destination, o, d, mode: TravelMode) -> RouteResult:
        rec = self._synthesize(origin, destination, o, d, mode)
        logger.info("[routes] serving synthetic %s route %s -> %s", mode, origin, destination)
        await self._store(rec)
        return _to_result(rec)

    # ──────────────────────────────────────────────────────────────
    # Lookup
    # ──────────────────────────────────────────────────────────────

    async def _fetch_mode(self, origin: str, destination: str, o, d, mode: TravelMode) -> RouteResult:
        self._hydrate()
        now = self._clock()
        key = route_memory_key(origin, destination, mode)

        hit = self._memory.get(key)
        if hit is not None and now < hit.expires_at:
            if not hit.synthetic:
                return _to_result(hit)
            if not await self.quota.has_quota_available("directions"):
                return _to_result(hit)
            logger.info("[routes] quota back, replacing synthetic route %s", key)

        if self._remote_enabled():
            doc_id = route_doc_id(origin, destination, mode)
            doc = await advisory_read_async("route remote load", lambda: self.remote.get_doc(ROUTES, doc_id))
            if doc:
                rec = RouteRecord.model_validate(doc)
                if now < rec.expires_at:
                    self._memory[key] = rec
                    self._persist_local()
                    return _to_result(rec)

        if not await self.quota.has_quota_available("directions"):
            return await self._offline(origin, destination, o, d, mode)
        if not await self.quota.record_api_call("directions"):
            return await self._offline(origin, destination, o, d, mode)

        pr = await self.directions.route(origin, destination, mode)
        if pr is None:
            return await self._offline(origin, destination, o, d, mode)

        rec = RouteRecord(
            origin=origin,
            destination=destination,
            mode=mode,
            path=pr.path,
            duration=pr.duration,
            distance_km=round(pr.distance_m / 1000.0, 2),
            created_at=now,
            expires_at=now + int(self.cfg.route_cache_ttl_s) * 1000,
        )
        await self._store(rec)
        return _to_result(rec)

    async def fetch_route(
        self,
        origin: str,
        destination: str,
        mode: Optional[TravelMode] = None,
    ) -> Optional[RouteResult]:
        origin = (origin or "").strip()
        destination = (destination or "").strip()
        o = parse_coord_string(origin)
        d = parse_coord_string(destination)
        if o is None or d is None:
            logger.warning("[routes] unparseable coordinates origin=%r destination=%r", origin, destination)
            return None

        threshold = float(self.cfg.route_walking_threshold_m)
        auto = mode is None
        chosen: TravelMode = mode or ("driving" if haversine_m(o[0], o[1], d[0], d[1]) > threshold else "walking")

        try:
            result = None
            for _ in range(MAX_MODE_ATTEMPTS):
                result = await self._fetch_mode(origin, destination, o, d, chosen)
                too_far = result.distance_km * 1000.0 > threshold
                if auto and chosen == "walking" and not result.synthetic and too_far:
                    logger.info("[routes] walking route is %.2f km, switching to driving", result.distance_km)
                    chosen = "driving"
                    continue
                break
            return result
        except Exception as e:
            logger.error("[routes] fetch failed %s -> %s: %s", origin, destination, e)
            try:
                return await self._offline(origin, destination, o, d, chosen)
            except Exception as e2:
                logger.error("[routes] offline synthesis failed: %s", e2)
                return None

    # ──────────────────────────────────────────────────────────────
    # Maintenance
    # ──────────────────────────────────────────────────────────────

    def clear_route_cache(self) -> bool:
        self._memory.clear()
        self._hydrated = True
        logger.info("[routes] cache cleared")
        return advisory_write("route local clear", lambda: self.local.delete(ROUTE_CACHE_KEY))

    def stats(self) -> RouteCacheStats:
        self._hydrate()
        return RouteCacheStats(
            count=len(self._memory),
            synthetic=sum(1 for r in self._memory.values() if r.synthetic),
        )

    def flush(self) -> bool:
        if not self._hydrated:
            return True
        return self._persist_local()
