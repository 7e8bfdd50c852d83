from __future__ import annotations

from fastapi import APIRouter

from discovery.core.time import utc_now_iso

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"ok": True, "time": utc_now_iso()}
