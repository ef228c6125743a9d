"""
Layered cache: a fast in-process map backed by a shared durable store.

The durable layer is SQLite with per-entry expiry. Cache failures are
logged as warnings and never crash a job; the system degrades to the
in-process layer only. Values must be JSON-serializable.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from typing import Any

logger = logging.getLogger(__name__)

_CACHE_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    expires_at REAL
);
"""


class DurableCache:
    """SQLite-backed key/value cache with optional time-to-live.

    Thread-safety: uses ``check_same_thread=False``; writes are serialized
    by SQLite's internal locking plus a connection lock.
    """

    def __init__(self, db_path: str = "data/nodeforge.db") -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.execute(_CACHE_SCHEMA)
            self._conn.commit()
        except sqlite3.Error:
            logger.warning(
                "DurableCache: failed to open %s, durable layer disabled",
                db_path, exc_info=True,
            )
            self._conn = None

    @property
    def available(self) -> bool:
        return self._conn is not None

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing or expired."""
        if self._conn is None:
            return None
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value_json, expires_at FROM cache_entries WHERE cache_key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error:
            logger.warning("DurableCache: read failed for %s", key, exc_info=True)
            return None
        if row is None:
            return None
        value_json, expires_at = row
        if expires_at is not None and expires_at <= time.time():
            self.invalidate(key)
            return None
        return json.loads(value_json)

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value, overwriting any previous entry for the key."""
        if self._conn is None:
            return
        expires_at = time.time() + ttl if ttl else None
        try:
            with self._lock:
                self._conn.execute(
                    """INSERT INTO cache_entries (cache_key, value_json, expires_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(cache_key) DO UPDATE SET
                           value_json=excluded.value_json, expires_at=excluded.expires_at""",
                    (key, json.dumps(value), expires_at),
                )
                self._conn.commit()
        except sqlite3.Error:
            logger.warning("DurableCache: write failed for %s", key, exc_info=True)

    def invalidate(self, key: str) -> None:
        if self._conn is None:
            return
        try:
            with self._lock:
                self._conn.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
                self._conn.commit()
        except sqlite3.Error:
            logger.warning("DurableCache: delete failed for %s", key, exc_info=True)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class LayeredCache:
    """In-process TTL map in front of an optional :class:`DurableCache`.

    A race between two writers with identical keys only causes redundant
    recomputation: cached values are pure functions of their keys.
    """

    def __init__(self, durable: DurableCache | None = None, default_ttl: float | None = None) -> None:
        self.durable = durable
        self.default_ttl = default_ttl
        self._memory: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._memory.get(key)
        if entry is not None:
            value, expires_at = entry
            if expires_at is None or expires_at > time.time():
                return value
            with self._lock:
                self._memory.pop(key, None)
        if self.durable is None:
            return None
        value = self.durable.get(key)
        if value is not None:
            self._remember(key, value, self.default_ttl)
        return value

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        self._remember(key, value, ttl)
        if self.durable is not None:
            self.durable.put(key, value, ttl=ttl)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._memory.pop(key, None)
        if self.durable is not None:
            self.durable.invalidate(key)

    def _remember(self, key: str, value: Any, ttl: float | None) -> None:
        expires_at = time.time() + ttl if ttl else None
        with self._lock:
            self._memory[key] = (value, expires_at)
