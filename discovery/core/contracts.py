from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
# Shared
# ──────────────────────────────────────────────────────────────

TravelMode = Literal["walking", "driving"]
ApiCategory = Literal["places", "directions"]
AppState = Literal["active", "background", "inactive"]


class Coord(BaseModel):
    lat: float
    lng: float


# ──────────────────────────────────────────────────────────────
# Places
# ──────────────────────────────────────────────────────────────

class ReviewSnippet(BaseModel):
    author_name: str = ""
    rating: Optional[float] = None
    text: str = ""
    relative_time_description: Optional[str] = None
    time: Optional[int] = None


class PlaceSummary(BaseModel):
    place_id: str
    name: str
    vicinity: str = ""
    lat: float
    lng: float
    types: List[str] = Field(default_factory=list)
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    price_level: Optional[int] = None
    photos: List[str] = Field(default_factory=list)   # photo references, provider order
    tourism_score: float = 0.0
    distance: Optional[float] = None                  # metres from the query point
    is_visited: bool = False


class PlaceDetails(PlaceSummary):
    formatted_address: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    opening_hours: Optional[Dict[str, Any]] = None
    reviews: List[ReviewSnippet] = Field(default_factory=list)
    url: Optional[str] = None
    editorial_summary: Optional[str] = None
    fetched_at: int = 0                               # epoch ms
    expires_at: int = 0                               # epoch ms

    def is_fresh(self, now: int) -> bool:
        return now < self.expires_at


class CacheEntry(BaseModel):
    """Area-level cache record: which places are valid around a GeoCell centre."""
    area_key: str
    center_lat: float
    center_lng: float
    place_ids: List[str] = Field(default_factory=list)
    created_at: int
    expires_at: int
    radius: float


class NearbyPlacesResult(BaseModel):
    places: List[PlaceSummary] = Field(default_factory=list)
    furthest_distance: float


# ──────────────────────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────────────────────

class RouteRecord(BaseModel):
    origin: str
    destination: str
    mode: TravelMode
    path: List[Coord] = Field(default_factory=list)
    duration: str
    distance_km: float
    created_at: int
    expires_at: int
    synthetic: bool = False                           # straight-line estimate, not a provider route


class RouteResult(BaseModel):
    path: List[Coord]
    duration: str
    distance_km: float
    mode: TravelMode
    synthetic: bool = False


class RouteRequest(BaseModel):
    origin: str                                       # "lat,lng"
    destination: str                                  # "lat,lng"
    mode: Optional[TravelMode] = None


# ──────────────────────────────────────────────────────────────
# Quota
# ──────────────────────────────────────────────────────────────

class QuotaCalls(BaseModel):
    places: int = 0
    directions: int = 0


class QuotaRecord(BaseModel):
    date: str                                         # YYYY-MM-DD, local calendar
    count: int = 0
    last_reset: int = 0
    api_calls: QuotaCalls = Field(default_factory=QuotaCalls)


class QuotaStats(BaseModel):
    used: int
    total: int
    remaining: int
    by_category: QuotaCalls
    reserved: Dict[str, int] = Field(default_factory=dict)
    reset_time: str


# ──────────────────────────────────────────────────────────────
# Visited
# ──────────────────────────────────────────────────────────────

class VisitedStatusEntry(BaseModel):
    place_id: str
    visited: bool
    checked_at: int


class VisitedCheckRequest(BaseModel):
    places: List[PlaceSummary]


# ──────────────────────────────────────────────────────────────
# Cache stats
# ──────────────────────────────────────────────────────────────

class MemoryCacheStats(BaseModel):
    places: int = 0
    cache_center: Optional[str] = None
    age_in_days: Optional[float] = None


class DetailsCacheStats(BaseModel):
    count: int = 0
    fresh_count: int = 0
    stale_count: int = 0


class RemoteCacheStats(BaseModel):
    areas: int = 0
    places: int = 0
    permanent_details: int = 0


class RouteCacheStats(BaseModel):
    count: int = 0
    synthetic: int = 0


class CacheStats(BaseModel):
    memory_cache: MemoryCacheStats
    details_cache: DetailsCacheStats
    route_cache: Optional[RouteCacheStats] = None
    remote_cache: Optional[RemoteCacheStats] = None


# ──────────────────────────────────────────────────────────────
# Location / session
# ──────────────────────────────────────────────────────────────

class LocationState(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    heading: Optional[float] = None
    permission_granted: bool = False
    initialized: bool = False
    last_updated: int = 0
    last_error: Optional[str] = None

    places: List[PlaceSummary] = Field(default_factory=list)
    furthest_distance: float = 0.0
    is_loading: bool = False
    has_preloaded: bool = False
    places_loading_enabled: bool = False


class InitializeRequest(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    permission_granted: bool = True


class LocationUpdate(BaseModel):
    lat: float
    lng: float
    heading: Optional[float] = None
    permission_granted: bool = True


class AppStateChange(BaseModel):
    state: AppState


class SessionRequest(BaseModel):
    user_id: Optional[str] = None


class LocationUpdateResponse(BaseModel):
    refreshed: bool
    state: LocationState


# ──────────────────────────────────────────────────────────────
# Small API envelopes
# ──────────────────────────────────────────────────────────────

class VisitedStatus(BaseModel):
    place_id: str
    visited: bool


class QuotaAvailability(BaseModel):
    category: ApiCategory
    available: bool
    remaining: int


class OkResponse(BaseModel):
    ok: bool
