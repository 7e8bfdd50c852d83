from __future__ import annotations

from fastapi import APIRouter, Depends

from discovery.core.contracts import OkResponse, RouteRequest, RouteResult
from discovery.core.errors import bad_request, unavailable
from discovery.core.geo import parse_coord_string
from discovery.services.routes import RouteCache

router = APIRouter(prefix="/routes")


def get_route_cache() -> RouteCache:
    raise RuntimeError("RouteCache must be provided by app dependency override")


@router.post("", response_model=RouteResult)
async def route(
    req: RouteRequest,
    routes: RouteCache = Depends(get_route_cache),
) -> RouteResult:
    if parse_coord_string(req.origin) is None or parse_coord_string(req.destination) is None:
        bad_request("bad_route_request", "origin and destination must be 'lat,lng'")

    result = await routes.fetch_route(req.origin, req.destination, req.mode)
    if result is None:
        unavailable("route_unavailable", "no route could be produced")
    return result


@router.delete("/cache", response_model=OkResponse)
def route_cache_clear(routes: RouteCache = Depends(get_route_cache)) -> OkResponse:
    return OkResponse(ok=routes.clear_route_cache())
