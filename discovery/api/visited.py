from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from discovery.core.contracts import OkResponse, PlaceSummary, VisitedCheckRequest, VisitedStatus
from discovery.services.visited import VisitedStatusCache

router = APIRouter(prefix="/visited")


def get_visited_cache() -> VisitedStatusCache:
    raise RuntimeError("VisitedStatusCache must be provided by app dependency override")


@router.get("")
async def visited_list(visited: VisitedStatusCache = Depends(get_visited_cache)) -> List[Dict[str, Any]]:
    return await visited.get_visited_places()


@router.post("", response_model=OkResponse)
async def visited_save(
    place: PlaceSummary,
    visited: VisitedStatusCache = Depends(get_visited_cache),
) -> OkResponse:
    return OkResponse(ok=await visited.save_visited_place(place))


@router.post("/check", response_model=List[PlaceSummary])
async def visited_check(
    req: VisitedCheckRequest,
    visited: VisitedStatusCache = Depends(get_visited_cache),
) -> List[PlaceSummary]:
    return await visited.check_visited_places(req.places)


@router.get("/{place_id}", response_model=VisitedStatus)
async def visited_status(
    place_id: str,
    visited: VisitedStatusCache = Depends(get_visited_cache),
) -> VisitedStatus:
    return VisitedStatus(place_id=place_id, visited=await visited.is_place_visited(place_id))
