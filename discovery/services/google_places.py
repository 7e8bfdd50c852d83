"""
Google Places (legacy JSON API) client for nearby discovery.

Docs: https://developers.google.com/maps/documentation/places/web-service/search-nearby

Two calls are used:
  - nearbysearch: coordinate + radius + type/keyword, paginated via next_page_token
  - details: one place_id + field mask

Responses are returned as raw dicts; conversion to PlaceSummary / PlaceDetails
happens here so the cache layer never touches provider field names.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from discovery.core.contracts import PlaceDetails, PlaceSummary, ReviewSnippet
from discovery.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class NearbyPage:
    status: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "OK"


# ──────────────────────────────────────────────────────────────
# Provider JSON → contracts
# ──────────────────────────────────────────────────────────────

def _location(raw: Dict[str, Any]) -> tuple[float, float] | None:
    loc = (raw.get("geometry") or {}).get("location") or {}
    lat = loc.get("lat")
    lng = loc.get("lng")
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def _photo_refs(raw: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for p in raw.get("photos") or []:
        ref = p.get("photo_reference")
        if ref:
            out.append(str(ref))
    return out


def result_to_summary(raw: Dict[str, Any]) -> PlaceSummary | None:
    """Convert one nearbysearch result. Results without id or location are dropped."""
    pid = raw.get("place_id")
    loc = _location(raw)
    if not pid or loc is None:
        return None
    return PlaceSummary(
        place_id=str(pid),
        name=str(raw.get("name") or ""),
        vicinity=str(raw.get("vicinity") or raw.get("formatted_address") or ""),
        lat=loc[0],
        lng=loc[1],
        types=[str(t) for t in raw.get("types") or []],
        rating=raw.get("rating"),
        user_ratings_total=raw.get("user_ratings_total"),
        price_level=raw.get("price_level"),
        photos=_photo_refs(raw),
    )


def result_to_details(raw: Dict[str, Any], *, fetched_at: int, expires_at: int) -> PlaceDetails | None:
    summary = result_to_summary(raw)
    if summary is None:
        return None

    reviews = [
        ReviewSnippet(
            author_name=str(r.get("author_name") or ""),
            rating=r.get("rating"),
            text=str(r.get("text") or ""),
            relative_time_description=r.get("relative_time_description"),
            time=r.get("time"),
        )
        for r in raw.get("reviews") or []
    ]
    editorial = raw.get("editorial_summary") or {}

    return PlaceDetails(
        **summary.model_dump(),
        formatted_address=raw.get("formatted_address"),
        website=raw.get("website"),
        phone=raw.get("formatted_phone_number"),
        opening_hours=raw.get("opening_hours"),
        reviews=reviews,
        url=raw.get("url"),
        editorial_summary=editorial.get("overview") if isinstance(editorial, dict) else None,
        fetched_at=fetched_at,
        expires_at=expires_at,
    )


class GooglePlacesClient:
    """Thin async wrapper around nearbysearch + details."""

    def __init__(self, client: httpx.AsyncClient, cfg: Settings) -> None:
        self.client = client
        self.key = cfg.google_maps_api_key
        self.base = cfg.places_base_url.rstrip("/")
        self.search_type = cfg.places_search_type
        self.search_keyword = cfg.places_search_keyword
        self.details_fields = cfg.places_details_fields
        self.timeout = cfg.provider_timeout_s

    async def _get_json(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        params = {**params, "key": self.key}
        try:
            resp = await self.client.get(f"{self.base}/{path}", params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "google_places_http_error path=%s status=%d body=%s",
                path,
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise RuntimeError(f"Google Places failed: HTTP {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            logger.error("google_places_timeout path=%s", path)
            raise RuntimeError("Google Places timed out") from exc

    async def nearby_search(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        *,
        page_token: Optional[str] = None,
    ) -> NearbyPage:
        if page_token:
            # continuation requests carry only the token
            params = {"pagetoken": page_token}
        else:
            params = {
                "location": f"{lat},{lng}",
                "radius": str(int(radius_m)),
                "type": self.search_type,
                "keyword": self.search_keyword,
                "rankby": "prominence",
            }

        logger.info("google_nearby lat=%.5f lng=%.5f radius=%d page=%s", lat, lng, radius_m, bool(page_token))
        data = await self._get_json("nearbysearch/json", params)

        status = str(data.get("status") or "UNKNOWN")
        if status not in ("OK", "ZERO_RESULTS"):
            logger.warning("google_nearby status=%s msg=%s", status, data.get("error_message"))
        return NearbyPage(
            status=status,
            results=list(data.get("results") or []),
            next_page_token=data.get("next_page_token"),
        )

    async def place_details(self, place_id: str) -> Optional[Dict[str, Any]]:
        """Raw details result, or None on a non-OK status."""
        data = await self._get_json(
            "details/json",
            {"place_id": place_id, "fields": self.details_fields},
        )
        status = str(data.get("status") or "UNKNOWN")
        if status != "OK":
            logger.warning("google_details status=%s place_id=%s", status, place_id)
            return None
        return data.get("result") or None
