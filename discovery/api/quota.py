from __future__ import annotations

from fastapi import APIRouter, Depends

from discovery.core.contracts import ApiCategory, QuotaAvailability, QuotaStats
from discovery.services.quota import QuotaLedger

router = APIRouter(prefix="/quota")


def get_quota_ledger() -> QuotaLedger:
    raise RuntimeError("QuotaLedger must be provided by app dependency override")


@router.get("", response_model=QuotaStats)
async def quota_stats(quota: QuotaLedger = Depends(get_quota_ledger)) -> QuotaStats:
    return await quota.get_quota_stats()


@router.get("/{category}", response_model=QuotaAvailability)
async def quota_available(
    category: ApiCategory,
    quota: QuotaLedger = Depends(get_quota_ledger),
) -> QuotaAvailability:
    return QuotaAvailability(
        category=category,
        available=await quota.has_quota_available(category),
        remaining=await quota.get_remaining_quota(),
    )
