from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from discovery.core.settings import Settings
from discovery.core.time import now_ms

logger = logging.getLogger(__name__)

# Shared collections
PLACES = "places"
PLACE_CACHES = "placeCaches"
PLACE_DETAILS = "placeDetails"
ROUTES = "routes"

# Per-user sub-collections
VISITED_PLACES = "visitedPlaces"
SETTINGS = "settings"
LOCATION_HISTORY = "locationHistory"
QUOTA_DOC_ID = "apiQuota"


def user_collection(uid: str, name: str) -> str:
    return f"users/{uid}/{name}"


def _chunked(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    if chunk_size <= 0:
        return [lst]
    return [lst[i : i + chunk_size] for i in range(0, len(lst), chunk_size)]


def _in_list(ids: Iterable[str]) -> str:
    # PostgREST in.(...) list; quote every value since ids may contain ',' or '.'
    quoted = ['"' + str(i).replace('"', '\\"') + '"' for i in ids]
    return f"in.({','.join(quoted)})"


class SupaDocumentStore:
    """
    Remote document tier over Supabase REST.

    One table holds every collection:
      roam_documents(collection text, doc_id text, data jsonb,
                     updated_at bigint, expires_at bigint null,
                     primary key (collection, doc_id))

    Uses service role key (bypasses RLS). Every method raises RuntimeError on
    transport or HTTP failure; services decide whether that matters.
    """

    def __init__(self, client: httpx.AsyncClient, cfg: Settings) -> None:
        if not cfg.supa_url or not cfg.supa_service_role_key:
            raise RuntimeError("Supabase not configured (SUPA_URL / SUPA_SERVICE_ROLE_KEY)")
        self.client = client
        self.base = cfg.supa_url.rstrip("/")
        self.key = cfg.supa_service_role_key
        self.table = cfg.supa_documents_table
        self.write_batch = int(cfg.remote_write_batch_size)
        self.read_batch = int(cfg.remote_read_batch_size)

    @property
    def url(self) -> str:
        return f"{self.base}/rest/v1/{self.table}"

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, *, params=None, json=None, headers=None) -> httpx.Response:
        h = self._headers()
        if headers:
            h.update(headers)
        try:
            resp = await self.client.request(method, self.url, params=params, json=json, headers=h)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            body = (e.response.text or "")[:800]
            raise RuntimeError(
                f"supa_{method.lower()}_failed status={e.response.status_code} body={body}"
            ) from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"supa_{method.lower()}_failed err={e!r}") from e

    # ──────────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────────

    async def get_doc(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        params = [
            ("select", "data"),
            ("collection", f"eq.{collection}"),
            ("doc_id", f"eq.{doc_id}"),
            ("limit", "1"),
        ]
        resp = await self._request("GET", params=params)
        rows = resp.json()
        if not rows:
            return None
        return rows[0].get("data")

    async def batch_get(self, collection: str, doc_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Fetch many documents by id, `read_batch` ids per request."""
        out: Dict[str, Dict[str, Any]] = {}
        ids = [i for i in dict.fromkeys(doc_ids) if i]
        for chunk in _chunked(ids, self.read_batch):
            params = [
                ("select", "doc_id,data"),
                ("collection", f"eq.{collection}"),
                ("doc_id", _in_list(chunk)),
            ]
            resp = await self._request("GET", params=params)
            for r in resp.json():
                if r.get("data") is not None:
                    out[str(r["doc_id"])] = r["data"]
        return out

    async def list_docs(self, collection: str, *, limit: int = 1000) -> List[Dict[str, Any]]:
        params = [
            ("select", "doc_id,data"),
            ("collection", f"eq.{collection}"),
            ("order", "updated_at.desc"),
            ("limit", str(max(1, int(limit)))),
        ]
        resp = await self._request("GET", params=params)
        return [r["data"] for r in resp.json() if r.get("data") is not None]

    async def count(self, collection: str) -> int:
        params = [("select", "doc_id"), ("collection", f"eq.{collection}")]
        resp = await self._request("HEAD", params=params, headers={"Prefer": "count=exact"})
        # Content-Range: 0-24/137  or  */0
        cr = resp.headers.get("content-range", "")
        total = cr.rsplit("/", 1)[-1] if "/" in cr else ""
        return int(total) if total.isdigit() else 0

    # ──────────────────────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────────────────────

    def _row(self, collection: str, doc_id: str, data: Dict[str, Any], expires_at: Optional[int]) -> Dict[str, Any]:
        return {
            "collection": collection,
            "doc_id": doc_id,
            "data": data,
            "updated_at": now_ms(),
            "expires_at": expires_at,
        }

    async def set_doc(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        *,
        expires_at: Optional[int] = None,
    ) -> None:
        await self.batch_set(collection, [(doc_id, data)], expires_at=expires_at)

    async def batch_set(
        self,
        collection: str,
        docs: List[Tuple[str, Dict[str, Any]]],
        *,
        expires_at: Optional[int] = None,
    ) -> int:
        rows = [self._row(collection, doc_id, data, expires_at) for doc_id, data in docs]
        if not rows:
            return 0

        chunks = _chunked(rows, self.write_batch)
        wrote = 0
        for idx, chunk in enumerate(chunks):
            try:
                await self._request(
                    "POST",
                    params=[("on_conflict", "collection,doc_id")],
                    json=chunk,
                    headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
                )
            except RuntimeError as e:
                raise RuntimeError(f"{e} chunk={idx + 1}/{len(chunks)}") from e
            wrote += len(chunk)
        return wrote

    async def delete_doc(self, collection: str, doc_id: str) -> None:
        params = [("collection", f"eq.{collection}"), ("doc_id", f"eq.{doc_id}")]
        await self._request("DELETE", params=params)

    async def delete_expired(self, collection: str, now: int) -> None:
        params = [("collection", f"eq.{collection}"), ("expires_at", f"lt.{int(now)}")]
        await self._request("DELETE", params=params)

    async def delete_older_than(self, collection: str, cutoff: int) -> None:
        params = [("collection", f"eq.{collection}"), ("updated_at", f"lt.{int(cutoff)}")]
        await self._request("DELETE", params=params)
