"""
Two-tier cache for analysis results and view data.

Tiers:
- MemoryTier: in-process LRU map, authoritative for the process lifetime
- SessionStore: slower persistent store scoped to one session (SQLite via aiosqlite)

Entries carry their write time and ttl. An expired entry is deleted from
whichever tier held it on the read that finds it; there is no background
sweep. Slow-tier failures are logged and absorbed, so the cache degrades
to fast-tier-only for the affected key.
"""

import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

import aiosqlite

from .models import CacheEntry

logger = logging.getLogger(__name__)


DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000
MAX_SERIALIZED_BYTES = 1_000_000  # 1MB per slow-tier entry


class MemoryTier:
    """LRU map of CacheEntry objects."""

    def __init__(self, max_size: int = DEFAULT_MAX_ENTRIES):
        self.max_size = max_size
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class SessionStore(Protocol):
    """Slow tier. Values are serialized JSON strings."""

    async def read(self, key: str) -> tuple[str, float, float] | None:
        """Return (payload, written_at, ttl) or None."""
        ...

    async def write(self, key: str, payload: str, written_at: float, ttl: float) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...


class SqliteSessionStore:
    """
    Session-scoped persistent tier backed by SQLite.

    Rows are namespaced by session id so several sessions can share one file
    without seeing each other's entries.
    """

    def __init__(self, db_path: Path | str, session_id: str = "default"):
        self.db_path = Path(db_path)
        self.session_id = session_id
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._db is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                session_id TEXT NOT NULL,
                key TEXT NOT NULL,
                payload TEXT NOT NULL,
                written_at REAL NOT NULL,
                ttl REAL NOT NULL,
                PRIMARY KEY (session_id, key)
            );
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def read(self, key: str) -> tuple[str, float, float] | None:
        await self.initialize()
        async with self._db.execute(
            "SELECT payload, written_at, ttl FROM cache_entries WHERE session_id = ? AND key = ?",
            (self.session_id, key),
        ) as cursor:
            row = await cursor.fetchone()
        return (row[0], row[1], row[2]) if row else None

    async def write(self, key: str, payload: str, written_at: float, ttl: float) -> None:
        size = len(payload.encode("utf-8"))
        if size > MAX_SERIALIZED_BYTES:
            raise ValueError(
                f"Entry size {size:,} bytes exceeds limit of {MAX_SERIALIZED_BYTES:,} bytes"
            )
        await self.initialize()
        await self._db.execute(
            """
            INSERT OR REPLACE INTO cache_entries (session_id, key, payload, written_at, ttl)
            VALUES (?, ?, ?, ?, ?)
            """,
            (self.session_id, key, payload, written_at, ttl),
        )
        await self._db.commit()

    async def delete(self, key: str) -> None:
        await self.initialize()
        await self._db.execute(
            "DELETE FROM cache_entries WHERE session_id = ? AND key = ?",
            (self.session_id, key),
        )
        await self._db.commit()

    async def clear(self) -> None:
        await self.initialize()
        await self._db.execute(
            "DELETE FROM cache_entries WHERE session_id = ?", (self.session_id,)
        )
        await self._db.commit()


@dataclass
class TieredCacheStats:
    """Hit/miss counters for a TieredCache."""

    fast_hits: int = 0
    slow_hits: int = 0
    misses: int = 0
    expired: int = 0
    slow_errors: int = 0

    @property
    def hits(self) -> int:
        return self.fast_hits + self.slow_hits

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class TieredCache:
    """Read-through fast tier in front of an optional slow session tier."""

    def __init__(
        self,
        session_store: SessionStore | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.session_store = session_store
        self._memory = MemoryTier(max_entries)
        self._clock = clock
        self._stats = TieredCacheStats()

    async def lookup(self, key: str) -> CacheEntry | None:
        """Return the live entry for key, or None on a miss."""
        now = self._clock()

        entry = self._memory.get(key)
        if entry is not None:
            if entry.is_valid(now):
                self._stats.fast_hits += 1
                logger.debug(f"[CACHE] memory hit: {key}")
                return entry
            self._memory.delete(key)
            self._stats.expired += 1

        entry = await self._read_slow(key, now)
        if entry is not None:
            self._memory.set(key, entry)
            self._stats.slow_hits += 1
            logger.debug(f"[CACHE] session hit: {key}")
            return entry

        self._stats.misses += 1
        return None

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss."""
        entry = await self.lookup(key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Write both tiers with the current timestamp."""
        entry = CacheEntry(
            value=value, written_at=self._clock(), ttl=self.ttl_seconds if ttl is None else ttl
        )
        self._memory.set(key, entry)

        if self.session_store is None:
            return
        try:
            payload = json.dumps(value)
            await self.session_store.write(key, payload, entry.written_at, entry.ttl)
        except Exception as e:
            self._stats.slow_errors += 1
            logger.warning(f"[CACHE] session tier write failed for {key}: {type(e).__name__}: {e}")

    async def invalidate(self, key: str) -> None:
        self._memory.delete(key)
        if self.session_store is None:
            return
        try:
            await self.session_store.delete(key)
        except Exception as e:
            self._stats.slow_errors += 1
            logger.warning(f"[CACHE] session tier delete failed for {key}: {type(e).__name__}: {e}")

    async def clear(self) -> None:
        self._memory.clear()
        if self.session_store is None:
            return
        try:
            await self.session_store.clear()
        except Exception as e:
            self._stats.slow_errors += 1
            logger.warning(f"[CACHE] session tier clear failed: {type(e).__name__}: {e}")

    async def _read_slow(self, key: str, now: float) -> CacheEntry | None:
        if self.session_store is None:
            return None
        try:
            row = await self.session_store.read(key)
            if row is None:
                return None
            payload, written_at, ttl = row
            entry = CacheEntry(value=json.loads(payload), written_at=written_at, ttl=ttl)
            if entry.is_valid(now):
                return entry
            self._stats.expired += 1
            await self.session_store.delete(key)
        except Exception as e:
            self._stats.slow_errors += 1
            logger.warning(f"[CACHE] session tier read failed for {key}: {type(e).__name__}: {e}")
        return None

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "hits": self._stats.hits,
            "fast_hits": self._stats.fast_hits,
            "slow_hits": self._stats.slow_hits,
            "misses": self._stats.misses,
            "expired": self._stats.expired,
            "slow_errors": self._stats.slow_errors,
            "hit_rate": self._stats.hit_rate,
            "size": len(self._memory),
        }


def insights_cache_key(item_id: str, kind: str) -> str:
    """Cache key for one item's insights of one kind."""
    return f"insights:{item_id}:{kind}"
