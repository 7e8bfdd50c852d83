from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from discovery.core.contracts import Coord, TravelMode
from discovery.core.polyline import decode_polyline
from discovery.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ProviderRoute:
    path: List[Coord]
    duration: str        # provider's human-readable text, e.g. "12 mins"
    distance_m: float
    duration_s: float


def _sum_legs(legs: List[Dict[str, Any]]) -> tuple[float, float, str]:
    dist_m = 0.0
    dur_s = 0.0
    texts: List[str] = []
    for leg in legs:
        dist_m += float((leg.get("distance") or {}).get("value") or 0)
        dur = leg.get("duration") or {}
        dur_s += float(dur.get("value") or 0)
        if dur.get("text"):
            texts.append(str(dur["text"]))
    # single-leg requests are the norm; keep the provider wording there
    text = texts[0] if len(texts) == 1 else format_duration(dur_s)
    return dist_m, dur_s, text


def format_duration(seconds: float) -> str:
    mins = max(1, int(round(seconds / 60.0)))
    if mins < 60:
        return f"{mins} min" if mins == 1 else f"{mins} mins"
    hours, rem = divmod(mins, 60)
    h = f"{hours} hour" if hours == 1 else f"{hours} hours"
    return h if rem == 0 else f"{h} {rem} min" + ("" if rem == 1 else "s")


class GoogleDirections:
    def __init__(self, client: httpx.AsyncClient, cfg: Settings):
        self.client = client
        self.url = cfg.directions_url
        self.key = cfg.google_maps_api_key
        self.timeout = cfg.provider_timeout_s

    async def route(self, origin: str, destination: str, mode: TravelMode) -> Optional[ProviderRoute]:
        """
        One Directions request. Returns None on a non-OK status or an empty
        route list; raises RuntimeError on transport/HTTP failure.
        """
        params = {
            "origin": origin,
            "destination": destination,
            "mode": mode,
            "key": self.key,
        }
        try:
            r = await self.client.get(self.url, params=params, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise RuntimeError(f"directions request failed: {e!r}") from e

        if r.status_code != 200:
            raise RuntimeError(f"directions returned {r.status_code}: {r.text[:500]}")

        data = r.json()
        status = str(data.get("status") or "UNKNOWN")
        routes = data.get("routes") or []
        if status != "OK" or not routes:
            logger.warning("[directions] status=%s msg=%s", status, data.get("error_message"))
            return None

        best = routes[0]
        poly = (best.get("overview_polyline") or {}).get("points") or ""
        path = [Coord(lat=lat, lng=lng) for lat, lng in decode_polyline(poly)] if poly else []
        if not path:
            logger.warning("[directions] empty overview geometry origin=%s destination=%s", origin, destination)
            return None

        dist_m, dur_s, text = _sum_legs(best.get("legs") or [])
        return ProviderRoute(path=path, duration=text, distance_m=dist_m, duration_s=dur_s)
