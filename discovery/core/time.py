from __future__ import annotations

import time
from datetime import date, datetime, timedelta, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def today_str() -> str:
    """Local calendar date as YYYY-MM-DD (quota day boundary)."""
    return date.today().isoformat()


def next_local_midnight() -> datetime:
    tomorrow = date.today() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day)
