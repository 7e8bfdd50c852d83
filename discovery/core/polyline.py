from __future__ import annotations

from typing import Iterator, List, Tuple

# Google Directions overview polylines use 1e5 precision.
DEFAULT_PRECISION = 5

_CHUNK_BITS = 5
_CHUNK_MASK = 0x1F
_CONTINUE = 0x20
_OFFSET = 63


def _zigzag_chars(delta: int) -> Iterator[str]:
    v = ~(delta << 1) if delta < 0 else delta << 1
    while v >= _CONTINUE:
        yield chr(((v & _CHUNK_MASK) | _CONTINUE) + _OFFSET)
        v >>= _CHUNK_BITS
    yield chr(v + _OFFSET)


def encode_polyline(coords: List[Tuple[float, float]], precision: int = DEFAULT_PRECISION) -> str:
    """Encode [(lat, lng), ...] as a Google encoded polyline string."""
    scale = 10 ** precision
    prev = (0, 0)
    parts: List[str] = []
    for lat, lng in coords:
        cur = (int(round(lat * scale)), int(round(lng * scale)))
        parts.extend(_zigzag_chars(cur[0] - prev[0]))
        parts.extend(_zigzag_chars(cur[1] - prev[1]))
        prev = cur
    return "".join(parts)


def _deltas(poly: str) -> Iterator[int]:
    acc = 0
    shift = 0
    for ch in poly:
        b = ord(ch) - _OFFSET
        acc |= (b & _CHUNK_MASK) << shift
        if b & _CONTINUE:
            shift += _CHUNK_BITS
            continue
        yield ~(acc >> 1) if acc & 1 else acc >> 1
        acc = 0
        shift = 0
    if shift:
        raise ValueError("truncated polyline")


def decode_polyline(poly: str, precision: int = DEFAULT_PRECISION) -> List[Tuple[float, float]]:
    """
    Decode a Google encoded polyline into [(lat, lng), ...].

    Raises ValueError when the string ends mid-value or holds an odd number
    of values.
    """
    scale = float(10 ** precision)
    values = list(_deltas(poly))
    if len(values) % 2:
        raise ValueError("truncated polyline")

    out: List[Tuple[float, float]] = []
    lat = 0
    lng = 0
    for i in range(0, len(values), 2):
        lat += values[i]
        lng += values[i + 1]
        out.append((lat / scale, lng / scale))
    return out
