from __future__ import annotations

import math
from typing import Any, Optional, Tuple

from discovery.core.contracts import Coord

EARTH_RADIUS_M = 6_371_000.0


# ──────────────────────────────────────────────────────────────
# Validation / parsing
# ──────────────────────────────────────────────────────────────

def is_valid_coord(lat: Any, lng: Any) -> bool:
    if lat is None or lng is None or isinstance(lat, bool) or isinstance(lng, bool):
        return False
    try:
        flat = float(lat)
        flng = float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(flat) or math.isnan(flng):
        return False
    return -90.0 <= flat <= 90.0 and -180.0 <= flng <= 180.0


def parse_coord_string(s: str | None) -> Optional[Tuple[float, float]]:
    """Parse "lat,lng" into a tuple; None when malformed or out of range."""
    if not s or not isinstance(s, str):
        return None
    parts = s.split(",")
    if len(parts) != 2:
        return None
    try:
        lat = float(parts[0].strip())
        lng = float(parts[1].strip())
    except ValueError:
        return None
    if not is_valid_coord(lat, lng):
        return None
    return lat, lng


# ──────────────────────────────────────────────────────────────
# Distance / bearing
# ──────────────────────────────────────────────────────────────

def haversine_m(a_lat: float, a_lng: float, b_lat: float, b_lng: float) -> float:
    """Great-circle distance in metres."""
    lat1, lon1 = math.radians(a_lat), math.radians(a_lng)
    lat2, lon2 = math.radians(b_lat), math.radians(b_lng)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    x = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # clamp: float error can push x just outside [0, 1] near antipodes
    x = min(1.0, max(0.0, x))
    return 2.0 * EARTH_RADIUS_M * math.asin(math.sqrt(x))


def bearing_deg(
    a_lat: float,
    a_lng: float,
    b_lat: float,
    b_lng: float,
    fallback: float = 0.0,
) -> float:
    """Initial bearing from a to b in degrees [0, 360)."""
    if a_lat == b_lat and a_lng == b_lng:
        return fallback

    lat1 = math.radians(a_lat)
    lat2 = math.radians(b_lat)
    dlng = math.radians(b_lng - a_lng)

    y = math.sin(dlng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlng)
    brng = math.degrees(math.atan2(y, x))
    return (brng + 360.0) % 360.0


def look_ahead(lat: float, lng: float, heading: float | None, distance_m: float | None) -> Coord:
    """Project a point `distance_m` ahead along `heading`. Used for camera framing."""
    if not is_valid_coord(lat, lng) or heading is None or distance_m is None:
        return Coord(lat=lat, lng=lng)

    d = distance_m / EARTH_RADIUS_M
    brng = math.radians(heading)
    lat1 = math.radians(lat)
    lon1 = math.radians(lng)

    lat2 = math.asin(math.sin(lat1) * math.cos(d) + math.cos(lat1) * math.sin(d) * math.cos(brng))
    lon2 = lon1 + math.atan2(
        math.sin(brng) * math.sin(d) * math.cos(lat1),
        math.cos(d) - math.sin(lat1) * math.sin(lat2),
    )
    lng2 = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return Coord(lat=math.degrees(lat2), lng=lng2)


def interpolate(a: Coord, b: Coord, t: float) -> Coord:
    """Linear interpolation in lat/lng space; fine for sub-10 km spans."""
    return Coord(lat=a.lat + (b.lat - a.lat) * t, lng=a.lng + (b.lng - a.lng) * t)


# ──────────────────────────────────────────────────────────────
# Bounding boxes
# ──────────────────────────────────────────────────────────────

BBox4 = Tuple[float, float, float, float]   # (min_lng, min_lat, max_lng, max_lat)


def bbox_for_radius(lat: float, lng: float, radius_m: float) -> BBox4:
    """Axis-aligned box enclosing the circle of `radius_m` around (lat, lng)."""
    dlat = math.degrees(radius_m / EARTH_RADIUS_M)
    coslat = math.cos(math.radians(lat))
    # poles: the circle covers every longitude
    if abs(coslat) < 1e-9:
        dlng = 180.0
    else:
        dlng = min(180.0, dlat / coslat)
    return (
        max(-180.0, lng - dlng),
        max(-90.0, lat - dlat),
        min(180.0, lng + dlng),
        min(90.0, lat + dlat),
    )
