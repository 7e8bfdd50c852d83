from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from discovery.core.contracts import (
    AppStateChange,
    InitializeRequest,
    LocationState,
    LocationUpdate,
    LocationUpdateResponse,
    SessionRequest,
)
from discovery.core.errors import bad_coordinates
from discovery.core.geo import is_valid_coord
from discovery.core.session import Session
from discovery.services.location import LocationService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_location_service() -> LocationService:
    raise RuntimeError("LocationService must be provided by app dependency override")


def get_session() -> Session:
    raise RuntimeError("Session must be provided by app dependency override")


# ──────────────────────────────────────────────────────────────
# /location
# ──────────────────────────────────────────────────────────────

@router.get("/location", response_model=LocationState)
def location_state(location: LocationService = Depends(get_location_service)) -> LocationState:
    return location.state


@router.post("/location", response_model=LocationUpdateResponse)
async def location_update(
    req: LocationUpdate,
    location: LocationService = Depends(get_location_service),
) -> LocationUpdateResponse:
    if not is_valid_coord(req.lat, req.lng):
        bad_coordinates(req.lat, req.lng)
    refreshed = await location.update_position(req.lat, req.lng, req.heading)
    return LocationUpdateResponse(refreshed=refreshed, state=location.state)


@router.post("/location/initialize", response_model=LocationState)
async def location_initialize(
    req: InitializeRequest,
    location: LocationService = Depends(get_location_service),
) -> LocationState:
    return await location.initialize(req.lat, req.lng, req.permission_granted)


@router.post("/location/refresh", response_model=LocationState)
async def location_refresh(
    force: bool = Query(False),
    location: LocationService = Depends(get_location_service),
) -> LocationState:
    return await location.refresh_places(force=force)


@router.post("/location/app-state", response_model=LocationState)
def location_app_state(
    req: AppStateChange,
    location: LocationService = Depends(get_location_service),
) -> LocationState:
    location.on_app_state_change(req.state)
    return location.state


# ──────────────────────────────────────────────────────────────
# /session
# ──────────────────────────────────────────────────────────────

@router.post("/session", response_model=LocationState)
def session_set(
    req: SessionRequest,
    session: Session = Depends(get_session),
    location: LocationService = Depends(get_location_service),
) -> LocationState:
    if req.user_id:
        session.sign_in(req.user_id)
    else:
        session.sign_out()
    location.on_session_change()
    return location.state
