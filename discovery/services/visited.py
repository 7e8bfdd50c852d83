from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from discovery.core.advisory import advisory_read, advisory_read_async, advisory_write, advisory_write_async
from discovery.core.contracts import PlaceSummary, VisitedStatusEntry
from discovery.core.session import Session
from discovery.core.settings import Settings
from discovery.core.storage import VISITED_PLACES_KEY, LocalStore
from discovery.core.time import now_ms
from discovery.services.remote_store import VISITED_PLACES, SupaDocumentStore, user_collection

logger = logging.getLogger(__name__)

_MISSING = object()


def _chunked(lst: List[str], size: int) -> List[List[str]]:
    size = max(1, size)
    return [lst[i : i + size] for i in range(0, len(lst), size)]


class VisitedStatusCache:
    """
    Which places the user has physically reached.

    Lookup: memo (positive and negative, week-long TTL) → users/{uid}/visitedPlaces
    → local visited list → False.
    """

    def __init__(
        self,
        *,
        session: Session,
        local: LocalStore,
        remote: Optional[SupaDocumentStore],
        cfg: Settings,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.local = local
        self.remote = remote
        self.memo_ttl_ms = int(cfg.visited_memo_ttl_s) * 1000
        self.batch_size = int(cfg.visited_batch_size)
        self.retry_delay_s = float(cfg.visited_retry_delay_s)
        self._clock = clock
        self._sleep = sleep

        self._memo: Dict[str, VisitedStatusEntry] = {}
        self._retries: Set[asyncio.Task] = set()

    # ──────────────────────────────────────────────────────────
    # Memo
    # ──────────────────────────────────────────────────────────

    def _remote_enabled(self) -> bool:
        return self.remote is not None and self.session.is_authenticated

    def _collection(self) -> str:
        return user_collection(self.session.user_id, VISITED_PLACES)

    def _memo_get(self, place_id: str) -> Optional[bool]:
        e = self._memo.get(place_id)
        if e is None:
            return None
        if self._clock() - e.checked_at >= self.memo_ttl_ms:
            del self._memo[place_id]
            return None
        return e.visited

    def _memo_set(self, place_id: str, visited: bool) -> None:
        self._memo[place_id] = VisitedStatusEntry(place_id=place_id, visited=visited, checked_at=self._clock())

    def clear_memo(self) -> None:
        self._memo.clear()

    # ──────────────────────────────────────────────────────────
    # Local list
    # ──────────────────────────────────────────────────────────

    def _local_list(self) -> List[Dict[str, Any]]:
        return advisory_read("visited local load", lambda: self.local.get(VISITED_PLACES_KEY), default=None) or []

    def _local_ids(self) -> Set[str]:
        return {str(r.get("place_id")) for r in self._local_list() if r.get("place_id")}

    def _local_append(self, record: Dict[str, Any]) -> None:
        # raises; wrapped by the caller's advisory write
        current = self.local.get(VISITED_PLACES_KEY) or []
        if any(r.get("place_id") == record["place_id"] for r in current):
            return
        current.append(record)
        self.local.put(VISITED_PLACES_KEY, current)

    # ──────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────

    async def is_place_visited(self, place_id: str) -> bool:
        if not place_id:
            return False
        memo = self._memo_get(place_id)
        if memo is not None:
            return memo

        visited = False
        reliable = True
        if self._remote_enabled():
            doc = await advisory_read_async(
                "visited remote load",
                lambda: self.remote.get_doc(self._collection(), place_id),
                default=_MISSING,
            )
            reliable = doc is not _MISSING
            visited = reliable and doc is not None
        if not visited:
            visited = place_id in self._local_ids()

        # a failed remote read is answered from the local list but not memoized
        if visited or reliable:
            self._memo_set(place_id, visited)
        return visited

    async def check_visited_places(self, places: List[PlaceSummary]) -> List[PlaceSummary]:
        """Copies of `places` with is_visited set; remote reads only for ids not memoized."""
        flags: Dict[str, bool] = {}
        pending: List[str] = []
        for p in places:
            memo = self._memo_get(p.place_id)
            if memo is None:
                if p.place_id not in pending:
                    pending.append(p.place_id)
            else:
                flags[p.place_id] = memo

        if pending:
            found: Set[str] = set()
            unread: Set[str] = set()
            if self._remote_enabled():
                for chunk in _chunked(pending, self.batch_size):
                    docs = await advisory_read_async(
                        "visited remote batch load",
                        lambda c=chunk: self.remote.batch_get(self._collection(), c),
                        default=None,
                    )
                    if docs is None:
                        unread.update(chunk)
                    else:
                        found.update(docs.keys())
            local_ids = self._local_ids()
            for pid in pending:
                v = pid in found or pid in local_ids
                if v or pid not in unread:
                    self._memo_set(pid, v)
                flags[pid] = v

        return [p.model_copy(update={"is_visited": flags.get(p.place_id, False)}) for p in places]

    async def get_visited_places(self) -> List[Dict[str, Any]]:
        if self._remote_enabled():
            docs = await advisory_read_async("visited remote list", lambda: self.remote.list_docs(self._collection()))
            if docs:
                return docs
        return self._local_list()

    # ──────────────────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────────────────

    async def _retry_remote(self, collection: str, record: Dict[str, Any]) -> None:
        await self._sleep(self.retry_delay_s)
        ok = await advisory_write_async(
            "visited remote retry",
            lambda: self.remote.set_doc(collection, record["place_id"], record),
        )
        logger.info("[visited] retry for %s %s", record["place_id"], "succeeded" if ok else "failed")

    def _schedule_retry(self, record: Dict[str, Any]) -> None:
        task = asyncio.ensure_future(self._retry_remote(self._collection(), record))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def save_visited_place(self, place: PlaceSummary) -> bool:
        pid = place.place_id
        if self._memo_get(pid) is True:
            return True

        record = {
            "place_id": pid,
            "name": place.name,
            "vicinity": place.vicinity,
            "lat": place.lat,
            "lng": place.lng,
            "types": list(place.types),
            "visited_at": self._clock(),
        }

        local_ok = advisory_write("visited local save", lambda: self._local_append(record))

        remote_ok = False
        if self._remote_enabled():
            remote_ok = await advisory_write_async(
                "visited remote save",
                lambda: self.remote.set_doc(self._collection(), pid, record),
            )
            if not remote_ok:
                self._schedule_retry(record)

        ok = local_ok or remote_ok
        if ok:
            self._memo_set(pid, True)
        else:
            logger.error("[visited] could not persist %s to any tier", pid)
        return ok

    async def drain(self) -> None:
        if self._retries:
            await asyncio.gather(*list(self._retries), return_exceptions=True)
