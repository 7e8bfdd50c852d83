from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Set

from discovery.core.advisory import advisory_read, advisory_write
from discovery.core.contracts import AppState, LocationState
from discovery.core.geo import haversine_m, is_valid_coord
from discovery.core.session import Session
from discovery.core.settings import Settings
from discovery.core.storage import LAST_KNOWN_LOCATION_KEY, LocalStore
from discovery.core.time import now_ms
from discovery.services.places import PlacesCache
from discovery.services.remote_store import LOCATION_HISTORY, SupaDocumentStore, user_collection
from discovery.services.visited import VisitedStatusCache

logger = logging.getLogger(__name__)

Listener = Callable[[LocationState], None]


class LocationService:
    """
    Process-wide position + nearby-places state.

    Listeners get a snapshot immediately on subscribe() and again after every
    change, synchronously and in registration order.
    """

    def __init__(
        self,
        *,
        session: Session,
        local: LocalStore,
        places: PlacesCache,
        visited: VisitedStatusCache,
        cfg: Settings,
        remote: Optional[SupaDocumentStore] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.session = session
        self.local = local
        self.places = places
        self.visited = visited
        self.remote = remote
        self.min_interval_ms = int(float(cfg.refresh_min_interval_s) * 1000)
        self.move_fraction = float(cfg.refresh_move_fraction)
        self._clock = clock

        self._state = LocationState()
        self._listeners: List[Listener] = []
        self._refreshing = False
        self._last_refresh_at: Optional[int] = None
        self._last_refresh_pos: Optional[tuple[float, float]] = None
        self._background: Set[asyncio.Task] = set()

    # ──────────────────────────────────────────────────────────
    # State / pub-sub
    # ──────────────────────────────────────────────────────────

    @property
    def state(self) -> LocationState:
        return self._state.model_copy(deep=True)

    def _deliver(self, listener: Listener, snap: LocationState) -> None:
        try:
            listener(snap)
        except Exception:
            logger.exception("[location] listener raised")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        self._deliver(listener, self.state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            self._deliver(listener, self.state)

    # ──────────────────────────────────────────────────────────
    # Position
    # ──────────────────────────────────────────────────────────

    def _persist_position(self, lat: float, lng: float, heading: Optional[float]) -> None:
        doc = {"lat": lat, "lng": lng, "heading": heading, "timestamp": self._clock()}
        advisory_write("last known location save", lambda: self.local.put(LAST_KNOWN_LOCATION_KEY, doc))

    def _record_history(self, lat: float, lng: float, heading: Optional[float]) -> None:
        if self.remote is None or not self.session.is_authenticated:
            return
        ts = self._clock()
        doc = {"lat": lat, "lng": lng, "heading": heading, "timestamp": ts}
        coll = user_collection(self.session.user_id, LOCATION_HISTORY)
        self._spawn(self.remote.set_doc(coll, str(ts), doc), "location history save")

    def _last_known(self) -> Optional[dict]:
        doc = advisory_read("last known location load", lambda: self.local.get(LAST_KNOWN_LOCATION_KEY))
        if not doc or not is_valid_coord(doc.get("lat"), doc.get("lng")):
            return None
        return doc

    async def initialize(
        self,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        permission_granted: bool = True,
    ) -> LocationState:
        """Location first, then places, then the initialized flag."""
        if permission_granted and is_valid_coord(lat, lng):
            self._update(
                lat=float(lat),
                lng=float(lng),
                permission_granted=True,
                last_updated=self._clock(),
                last_error=None,
            )
            self._persist_position(float(lat), float(lng), None)
        else:
            doc = self._last_known()
            if doc is not None:
                logger.info("[location] using last known location")
                self._update(
                    lat=float(doc["lat"]),
                    lng=float(doc["lng"]),
                    heading=doc.get("heading"),
                    permission_granted=permission_granted,
                    last_updated=int(doc.get("timestamp") or 0),
                    last_error=None if permission_granted else "location permission denied",
                )
            else:
                self._update(
                    permission_granted=permission_granted,
                    last_error="location permission denied" if not permission_granted else "no position available",
                )

        self._update(places_loading_enabled=self.session.is_authenticated)

        s = self._state
        if s.lat is not None and s.lng is not None:
            await self._refresh(s.lat, s.lng, force=False)

        self._update(initialized=True)
        self._spawn(self.places.cleanup_expired(), "cache cleanup")
        return self.state

    def should_refresh(self, lat: float, lng: float) -> bool:
        s = self._state
        if not s.initialized or not s.places_loading_enabled or self._refreshing:
            return False
        if self._last_refresh_at is None or self._last_refresh_pos is None:
            return True
        if self._clock() - self._last_refresh_at < self.min_interval_ms:
            return False
        moved = haversine_m(self._last_refresh_pos[0], self._last_refresh_pos[1], lat, lng)
        return moved > self.move_fraction * s.furthest_distance

    async def update_position(self, lat: float, lng: float, heading: Optional[float] = None) -> bool:
        """Record a new fix. True when it triggered a places refresh."""
        if not is_valid_coord(lat, lng):
            self._update(last_error=f"invalid coordinates lat={lat} lng={lng}")
            return False
        lat = float(lat)
        lng = float(lng)
        self._update(
            lat=lat,
            lng=lng,
            heading=heading,
            permission_granted=True,
            last_updated=self._clock(),
            last_error=None,
        )
        self._persist_position(lat, lng, heading)
        self._record_history(lat, lng, heading)

        if not self.should_refresh(lat, lng):
            return False
        await self._refresh(lat, lng, force=False)
        return True

    # ──────────────────────────────────────────────────────────
    # Places
    # ──────────────────────────────────────────────────────────

    async def _refresh(self, lat: float, lng: float, force: bool) -> bool:
        if self._refreshing:
            logger.debug("[location] refresh already running, skipped")
            return False
        if not self._state.places_loading_enabled:
            logger.debug("[location] places loading disabled, skipped")
            return False

        self._refreshing = True
        self._update(is_loading=True)
        try:
            result = await self.places.fetch_nearby_places(lat, lng, force_refresh=force)
            merged = await self.visited.check_visited_places(result.places)
            self._last_refresh_at = self._clock()
            self._last_refresh_pos = (lat, lng)
            self._update(places=merged, furthest_distance=result.furthest_distance, has_preloaded=True)
            return True
        except Exception as e:
            logger.error("[location] places refresh failed: %s", e)
            self._update(last_error=f"places refresh failed: {e}")
            return False
        finally:
            self._refreshing = False
            self._update(is_loading=False)

    async def refresh_places(
        self,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        force: bool = False,
    ) -> LocationState:
        s = self._state
        lat = s.lat if lat is None else lat
        lng = s.lng if lng is None else lng
        if not is_valid_coord(lat, lng):
            return self.state
        await self._refresh(float(lat), float(lng), force)
        return self.state

    def set_places_loading_enabled(self, enabled: bool) -> None:
        if self._state.places_loading_enabled != enabled:
            logger.info("[location] places loading %s", "enabled" if enabled else "disabled")
            self._update(places_loading_enabled=enabled)

    def on_app_state_change(self, app_state: AppState) -> None:
        if app_state == "active":
            self.set_places_loading_enabled(self.session.is_authenticated)
        elif app_state == "background":
            self.set_places_loading_enabled(False)

    def on_session_change(self) -> None:
        # visited flags belong to the previous user
        self.visited.clear_memo()
        self.set_places_loading_enabled(self.session.is_authenticated)

    # ──────────────────────────────────────────────────────────
    # Background work
    # ──────────────────────────────────────────────────────────

    def _spawn(self, coro, label: str) -> None:
        async def _runner():
            try:
                await coro
            except Exception as e:
                logger.warning("[location] background %s failed: %s", label, e)

        task = asyncio.ensure_future(_runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
