from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from discovery.core.contracts import CacheStats, NearbyPlacesResult, OkResponse, PlaceDetails
from discovery.core.errors import bad_coordinates, not_found
from discovery.core.geo import is_valid_coord
from discovery.services.places import PlacesCache
from discovery.services.routes import RouteCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/places")


def get_places_cache() -> PlacesCache:
    raise RuntimeError("PlacesCache must be provided by app dependency override")


def get_route_cache() -> RouteCache:
    raise RuntimeError("RouteCache must be provided by app dependency override")


# ──────────────────────────────────────────────────────────────
# /places/nearby
# ──────────────────────────────────────────────────────────────

@router.get("/nearby", response_model=NearbyPlacesResult)
async def places_nearby(
    lat: float = Query(...),
    lng: float = Query(...),
    force_refresh: bool = Query(False),
    places: PlacesCache = Depends(get_places_cache),
) -> NearbyPlacesResult:
    if not is_valid_coord(lat, lng):
        bad_coordinates(lat, lng)
    return await places.fetch_nearby_places(lat, lng, force_refresh=force_refresh)


# ──────────────────────────────────────────────────────────────
# /places/cache
# ──────────────────────────────────────────────────────────────

@router.get("/cache/stats", response_model=CacheStats)
async def places_cache_stats(
    places: PlacesCache = Depends(get_places_cache),
    routes: RouteCache = Depends(get_route_cache),
) -> CacheStats:
    stats = await places.get_cache_stats()
    stats.route_cache = routes.stats()
    return stats


@router.delete("/cache", response_model=OkResponse)
def places_cache_clear(places: PlacesCache = Depends(get_places_cache)) -> OkResponse:
    return OkResponse(ok=places.clear_places_cache())


@router.post("/cache/cleanup")
async def places_cache_cleanup(
    force: bool = Query(False),
    places: PlacesCache = Depends(get_places_cache),
) -> dict:
    ran = await places.cleanup_expired(force=force)
    return {"ran": ran}


# ──────────────────────────────────────────────────────────────
# /places/{place_id}
# ──────────────────────────────────────────────────────────────

@router.get("/{place_id}", response_model=PlaceDetails)
async def place_details(
    place_id: str,
    places: PlacesCache = Depends(get_places_cache),
) -> PlaceDetails:
    details = await places.fetch_place_by_id(place_id)
    if details is None:
        not_found("place_unavailable", f"no details available for {place_id}")
    return details
