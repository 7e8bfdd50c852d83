# discovery/main.py
from __future__ import annotations

import logging
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load <repo>/.env (main.py is <repo>/discovery/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from discovery.core.settings import settings
from discovery.core.session import Session
from discovery.core.storage import LocalStore, connect_sqlite, ensure_schema
from discovery.api import api_router

from discovery.services.connectivity import ConnectivityProbe
from discovery.services.directions import GoogleDirections
from discovery.services.google_places import GooglePlacesClient
from discovery.services.location import LocationService
from discovery.services.places import PlacesCache
from discovery.services.quota import QuotaLedger
from discovery.services.remote_store import SupaDocumentStore
from discovery.services.routes import RouteCache
from discovery.services.visited import VisitedStatusCache

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Discovery Backend", version="1.0.0")

# ── Compression (must be added before CORS) ──
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        # Expo / native shells
        "exp://localhost:8081",
        "capacitor://localhost",

        # Local web dev
        "http://localhost:8081",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ──────────────────────────────────────────────────────────────
# Connections
# ──────────────────────────────────────────────────────────────

# Local tier (rw): SQLite kv_store, local to the instance
_cache_conn = connect_sqlite(settings.cache_db_path)
ensure_schema(_cache_conn)
_local = LocalStore(_cache_conn)

# One pooled client for Google, Supabase and the connectivity probe
_http = httpx.AsyncClient(timeout=settings.provider_timeout_s)

_remote: SupaDocumentStore | None = None
if settings.supa_enabled:
    try:
        _remote = SupaDocumentStore(_http, settings)
    except RuntimeError as e:
        logger.warning("[app] remote store disabled: %s", e)

if not settings.google_maps_api_key:
    logger.warning("[app] GOOGLE_MAPS_API_KEY is not set; provider calls will fail and fall back to caches")

# ──────────────────────────────────────────────────────────────
# Services (one instance each, process lifetime)
# ──────────────────────────────────────────────────────────────

_session = Session()

_quota = QuotaLedger(session=_session, local=_local, remote=_remote, cfg=settings)

_places = PlacesCache(
    session=_session,
    local=_local,
    remote=_remote,
    provider=GooglePlacesClient(_http, settings),
    quota=_quota,
    connectivity=ConnectivityProbe(_http, settings),
    cfg=settings,
)

_routes = RouteCache(
    session=_session,
    local=_local,
    remote=_remote,
    directions=GoogleDirections(_http, settings),
    quota=_quota,
    cfg=settings,
)

_visited = VisitedStatusCache(session=_session, local=_local, remote=_remote, cfg=settings)

_location = LocationService(
    session=_session,
    local=_local,
    places=_places,
    visited=_visited,
    cfg=settings,
    remote=_remote,
)

# ──────────────────────────────────────────────────────────────
# Dependency providers
# ──────────────────────────────────────────────────────────────

def provide_session() -> Session:
    return _session


def provide_quota_ledger() -> QuotaLedger:
    return _quota


def provide_places_cache() -> PlacesCache:
    return _places


def provide_route_cache() -> RouteCache:
    return _routes


def provide_visited_cache() -> VisitedStatusCache:
    return _visited


def provide_location_service() -> LocationService:
    return _location


# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

from discovery.api import location as location_api
from discovery.api import nav as nav_api
from discovery.api import places as places_api
from discovery.api import quota as quota_api
from discovery.api import visited as visited_api

# Places
app.dependency_overrides[places_api.get_places_cache] = provide_places_cache
app.dependency_overrides[places_api.get_route_cache] = provide_route_cache

# Routes
app.dependency_overrides[nav_api.get_route_cache] = provide_route_cache

# Visited
app.dependency_overrides[visited_api.get_visited_cache] = provide_visited_cache

# Quota
app.dependency_overrides[quota_api.get_quota_ledger] = provide_quota_ledger

# Location / session
app.dependency_overrides[location_api.get_location_service] = provide_location_service
app.dependency_overrides[location_api.get_session] = provide_session

# Routers
app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("shutdown")
async def shutdown():
    logger.info("[app] Shutting down, flushing caches and closing connections")
    await _location.drain()
    await _places.drain()
    await _visited.drain()
    _places.flush()
    _routes.flush()
    try:
        await _http.aclose()
    except Exception as e:
        logger.warning("[app] Error closing http client: %s", e)
    try:
        _cache_conn.close()
    except Exception:
        pass
