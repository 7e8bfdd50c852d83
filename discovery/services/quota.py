from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

from discovery.core.contracts import ApiCategory, QuotaCalls, QuotaRecord, QuotaStats
from discovery.core.session import Session
from discovery.core.settings import Settings
from discovery.core.storage import QUOTA_KEY, LocalStore
from discovery.core.time import next_local_midnight, now_ms, today_str
from discovery.services.remote_store import QUOTA_DOC_ID, SETTINGS, SupaDocumentStore, user_collection

logger = logging.getLogger(__name__)


class QuotaLedger:
    """
    Daily ceiling on billable provider calls, shared by every category.

    The record lives in users/{uid}/settings/apiQuota when signed in, else in
    the local quota key. A stored date other than today's reads as a zeroed
    record. Any storage error fails closed.
    """

    def __init__(
        self,
        *,
        session: Session,
        local: LocalStore,
        remote: Optional[SupaDocumentStore],
        cfg: Settings,
        today: Callable[[], str] = today_str,
        clock: Callable[[], int] = now_ms,
    ):
        self.session = session
        self.local = local
        self.remote = remote
        self.daily_max = int(cfg.quota_daily_max)
        self.reserved: Dict[str, int] = {
            "places": int(cfg.quota_reserved_places),
            "directions": int(cfg.quota_reserved_directions),
        }
        self._today = today
        self._clock = clock
        self._lock = asyncio.Lock()

    # ──────────────────────────────────────────────────────────────
    # Storage
    # ──────────────────────────────────────────────────────────────

    def _use_remote(self) -> bool:
        return self.remote is not None and self.session.is_authenticated

    async def _read_raw(self) -> Optional[dict]:
        if self._use_remote():
            return await self.remote.get_doc(user_collection(self.session.user_id, SETTINGS), QUOTA_DOC_ID)
        return self.local.get(QUOTA_KEY)

    async def _write(self, rec: QuotaRecord) -> None:
        data = rec.model_dump()
        if self._use_remote():
            await self.remote.set_doc(user_collection(self.session.user_id, SETTINGS), QUOTA_DOC_ID, data)
        else:
            self.local.put(QUOTA_KEY, data)

    async def _load(self) -> QuotaRecord:
        today = self._today()
        raw = await self._read_raw()
        if raw:
            rec = QuotaRecord.model_validate(raw)
            if rec.date == today:
                return rec
            logger.info("[quota] day rollover %s -> %s (count was %d)", rec.date, today, rec.count)
        rec = QuotaRecord(date=today, count=0, last_reset=self._clock(), api_calls=QuotaCalls())
        await self._write(rec)
        return rec

    # ──────────────────────────────────────────────────────────────
    # Public
    # ──────────────────────────────────────────────────────────────

    def _log_reservation(self, rec: QuotaRecord, category: ApiCategory) -> None:
        # Reservation is informational: it is reported but never denies a call.
        remaining = self.daily_max - rec.count
        held_for_others = sum(v for k, v in self.reserved.items() if k != category)
        if 0 < remaining <= held_for_others:
            logger.info(
                "[quota] %s call dips into reserved allowance (remaining=%d reserved_for_others=%d)",
                category,
                remaining,
                held_for_others,
            )

    async def has_quota_available(self, category: ApiCategory) -> bool:
        try:
            rec = await self._load()
        except Exception as e:
            logger.error("[quota] read failed, treating as exhausted: %s", e)
            return False
        self._log_reservation(rec, category)
        return rec.count < self.daily_max

    async def record_api_call(self, category: ApiCategory) -> bool:
        async with self._lock:
            try:
                rec = await self._load()
                if rec.count >= self.daily_max:
                    logger.warning("[quota] daily ceiling reached (%d), %s call refused", self.daily_max, category)
                    return False
                self._log_reservation(rec, category)
                rec.count += 1
                setattr(rec.api_calls, category, getattr(rec.api_calls, category) + 1)
                await self._write(rec)
                logger.debug("[quota] %s call recorded (%d/%d)", category, rec.count, self.daily_max)
                return True
            except Exception as e:
                logger.error("[quota] record failed, refusing call: %s", e)
                return False

    async def get_remaining_quota(self) -> int:
        try:
            rec = await self._load()
        except Exception as e:
            logger.error("[quota] read failed: %s", e)
            return 0
        return max(0, self.daily_max - rec.count)

    async def get_quota_stats(self) -> QuotaStats:
        try:
            rec = await self._load()
            used = rec.count
            by_category = rec.api_calls
        except Exception as e:
            logger.error("[quota] stats read failed: %s", e)
            used = self.daily_max
            by_category = QuotaCalls()
        return QuotaStats(
            used=used,
            total=self.daily_max,
            remaining=max(0, self.daily_max - used),
            by_category=by_category,
            reserved=dict(self.reserved),
            reset_time=next_local_midnight().isoformat(),
        )
