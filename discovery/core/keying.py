from __future__ import annotations

import base64
import hashlib
from typing import Any, List

import orjson

from discovery.core.geo import bbox_for_radius

# Area keys round to 2 decimals: ~1.1 km cells at the equator.
AREA_KEY_PRECISION = 2
AREA_CELL_DEG = 0.01


def _orjson_dumps(obj: Any) -> bytes:
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS)


def sha256_b64(data: bytes) -> str:
    h = hashlib.sha256(data).digest()
    return base64.urlsafe_b64encode(h).decode("ascii").rstrip("=")


# ──────────────────────────────────────────────────────────────
# GeoCell / area keys
# ──────────────────────────────────────────────────────────────

def area_key(lat: float, lng: float) -> str:
    return f"{round(lat, AREA_KEY_PRECISION):.2f}_{round(lng, AREA_KEY_PRECISION):.2f}"


def neighbour_keys(lat: float, lng: float, radius_m: float = 0.0) -> List[str]:
    """
    Area keys of every cell touched by the box around (lat, lng), always
    including the 3x3 block centred on the query's own cell.
    """
    c_lat = round(lat, AREA_KEY_PRECISION)
    c_lng = round(lng, AREA_KEY_PRECISION)
    min_lng, min_lat, max_lng, max_lat = bbox_for_radius(lat, lng, radius_m)

    lo_lat = min(c_lat - AREA_CELL_DEG, round(min_lat, AREA_KEY_PRECISION))
    hi_lat = max(c_lat + AREA_CELL_DEG, round(max_lat, AREA_KEY_PRECISION))
    lo_lng = min(c_lng - AREA_CELL_DEG, round(min_lng, AREA_KEY_PRECISION))
    hi_lng = max(c_lng + AREA_CELL_DEG, round(max_lng, AREA_KEY_PRECISION))

    n_lat = int(round((hi_lat - lo_lat) / AREA_CELL_DEG))
    n_lng = int(round((hi_lng - lo_lng) / AREA_CELL_DEG))

    keys: List[str] = []
    seen = set()
    for i in range(n_lat + 1):
        for j in range(n_lng + 1):
            k = area_key(lo_lat + i * AREA_CELL_DEG, lo_lng + j * AREA_CELL_DEG)
            if k not in seen:
                seen.add(k)
                keys.append(k)
    return keys


# ──────────────────────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────────────────────

def route_memory_key(origin: str, destination: str, mode: str) -> str:
    return f"{origin}|{destination}|{mode}"


def route_doc_id(origin: str, destination: str, mode: str) -> str:
    """Stable remote document id for a route (origin strings may contain ',' and '.')."""
    payload = {"origin": origin, "destination": destination, "mode": mode}
    return sha256_b64(_orjson_dumps(payload))
