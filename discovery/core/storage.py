from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, List, Optional

import orjson

from discovery.core.time import utc_now_iso

# Fixed local keys
PLACES_CACHE_KEY = "places_cache_v2"
PLACE_DETAILS_CACHE_KEY = "place_details_cache_v2"
ROUTE_CACHE_KEY = "route_cache_v1"
QUOTA_KEY = "places_api_quota_v2"
LAST_KNOWN_LOCATION_KEY = "last_known_location"
VISITED_PLACES_KEY = "visitedPlaces"
LAST_CLEANUP_KEY = "places_last_cleanup"


# ──────────────────────────────────────────────────────────────
# Connections
# ──────────────────────────────────────────────────────────────

def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    Read-write connection for the local tier. Parent directories are created
    here since WAL needs to place its -wal/-shm files next to the database.
    """
    if path != ":memory:":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


# ──────────────────────────────────────────────────────────────
# Schema
# ──────────────────────────────────────────────────────────────

def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            updated_at TEXT NOT NULL,
            value_json BLOB NOT NULL
        );
        """
    )
    conn.commit()


# ──────────────────────────────────────────────────────────────
# Key/value blobs
# ──────────────────────────────────────────────────────────────

class LocalStore:
    """
    Device-local key/value tier: one orjson blob per fixed key.

    Methods raise on sqlite/orjson errors; callers wrap them in advisory writes.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, key: str) -> Optional[Any]:
        cur = self.conn.execute("SELECT value_json FROM kv_store WHERE key=?;", (key,))
        row = cur.fetchone()
        if not row:
            return None
        return orjson.loads(row[0])

    def put(self, key: str, value: Any) -> int:
        blob = orjson.dumps(value)
        self.conn.execute(
            """
            INSERT OR REPLACE INTO kv_store (key, updated_at, value_json)
            VALUES (?, ?, ?);
            """,
            (key, utc_now_iso(), blob),
        )
        self.conn.commit()
        return len(blob)

    def delete(self, key: str) -> None:
        self.conn.execute("DELETE FROM kv_store WHERE key=?;", (key,))
        self.conn.commit()

    def keys(self) -> List[str]:
        cur = self.conn.execute("SELECT key FROM kv_store ORDER BY key;")
        return [str(r[0]) for r in cur.fetchall()]
