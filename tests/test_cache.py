"""
Unit tests for the two-tier cache.

Tests cover:
- Memory tier LRU eviction
- TTL boundary behaviour with a controlled clock
- Slow-tier promotion and lazy eviction
- Slow-tier failures degrading to memory-only
- SQLite session store scoping and size limit
"""

import json
from unittest.mock import AsyncMock

import pytest

from story_insights.cache import (
    MAX_SERIALIZED_BYTES,
    MemoryTier,
    SqliteSessionStore,
    TieredCache,
    insights_cache_key,
)
from story_insights.models import CacheEntry

from conftest import FakeClock


class TestMemoryTier:
    """Tests for MemoryTier."""

    def test_evicts_least_recently_used(self):
        """Test the oldest untouched entry is evicted at capacity."""
        tier = MemoryTier(max_size=2)
        tier.set("a", CacheEntry("A", 0, 10))
        tier.set("b", CacheEntry("B", 0, 10))

        tier.get("a")
        tier.set("c", CacheEntry("C", 0, 10))

        assert "a" in tier
        assert "b" not in tier
        assert "c" in tier
        assert len(tier) == 2

    def test_overwrite_does_not_grow(self):
        """Test rewriting a key keeps one entry."""
        tier = MemoryTier(max_size=2)
        tier.set("a", CacheEntry("A1", 0, 10))
        tier.set("a", CacheEntry("A2", 0, 10))

        assert len(tier) == 1
        assert tier.get("a").value == "A2"


class TestTieredCacheTTL:
    """Tests for TTL correctness."""

    @pytest.mark.asyncio
    async def test_hit_before_ttl_miss_at_ttl(self):
        """Test an entry is a hit just before t0+ttl and a miss at t0+ttl."""
        clock = FakeClock(1000.0)
        cache = TieredCache(ttl_seconds=60, clock=clock)
        await cache.set("k", {"v": 1})

        clock.advance(59.999)
        assert await cache.get("k") == {"v": 1}

        clock.now = 1060.0
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_expired_entry_is_discarded(self):
        """Test an expired entry is removed, not just hidden."""
        clock = FakeClock(0.0)
        cache = TieredCache(ttl_seconds=10, clock=clock)
        await cache.set("k", "value")

        clock.advance(11)
        assert await cache.get("k") is None

        # Moving the clock back must not resurrect it
        clock.now = 0.0
        assert await cache.get("k") is None
        assert cache.get_stats()["expired"] == 1

    @pytest.mark.asyncio
    async def test_per_entry_ttl(self):
        """Test a per-write ttl overrides the default."""
        clock = FakeClock(0.0)
        cache = TieredCache(ttl_seconds=300, clock=clock)
        await cache.set("short", "x", ttl=5)

        clock.advance(6)
        assert await cache.get("short") is None

    @pytest.mark.asyncio
    async def test_zero_ttl_is_stale_immediately(self):
        """Test an explicit ttl of 0 is honored, not replaced by the default."""
        clock = FakeClock(0.0)
        cache = TieredCache(ttl_seconds=300, clock=clock)
        await cache.set("k", 1, ttl=0)

        assert await cache.lookup("k") is None

    @pytest.mark.asyncio
    async def test_invalidate(self):
        """Test invalidate removes the entry."""
        cache = TieredCache()
        await cache.set("k", 1)
        await cache.invalidate("k")

        assert await cache.get("k") is None


class TestTieredCacheSlowTier:
    """Tests for the slow session tier."""

    @pytest.mark.asyncio
    async def test_promotes_slow_hit_into_memory(self, session_store: SqliteSessionStore):
        """Test a slow-tier hit is copied into memory with its original timestamp."""
        clock = FakeClock(100.0)
        await session_store.write("k", json.dumps(["a", "b"]), written_at=90.0, ttl=30.0)
        cache = TieredCache(session_store, ttl_seconds=30, clock=clock)

        entry = await cache.lookup("k")

        assert entry.value == ["a", "b"]
        assert entry.written_at == 90.0
        assert cache.get_stats()["slow_hits"] == 1

        await cache.get("k")
        assert cache.get_stats()["fast_hits"] == 1

        # Promoted entry still expires relative to its original write
        clock.now = 120.0
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_expired_slow_entry_deleted(self, session_store: SqliteSessionStore):
        """Test an expired slow-tier entry is deleted on read."""
        await session_store.write("k", json.dumps(1), written_at=0.0, ttl=10.0)
        cache = TieredCache(session_store, clock=FakeClock(50.0))

        assert await cache.get("k") is None
        assert await session_store.read("k") is None

    @pytest.mark.asyncio
    async def test_set_writes_both_tiers(self, session_store: SqliteSessionStore):
        """Test set persists into the session store."""
        cache = TieredCache(session_store, ttl_seconds=30, clock=FakeClock(5.0))
        await cache.set("k", {"n": 2})

        payload, written_at, ttl = await session_store.read("k")
        assert json.loads(payload) == {"n": 2}
        assert written_at == 5.0
        assert ttl == 30

    @pytest.mark.asyncio
    async def test_slow_write_failure_is_swallowed(self):
        """Test a failing slow tier never breaks set and memory still serves."""
        broken = AsyncMock()
        broken.write.side_effect = OSError("disk full")
        broken.read.side_effect = OSError("disk gone")
        cache = TieredCache(broken)

        await cache.set("k", "value")

        assert await cache.get("k") == "value"
        assert cache.get_stats()["slow_errors"] == 1

    @pytest.mark.asyncio
    async def test_unserializable_value_stays_in_memory(self, session_store: SqliteSessionStore):
        """Test values that cannot be serialized are cached in memory only."""
        cache = TieredCache(session_store)
        value = {"when": object()}

        await cache.set("k", value)

        assert await cache.get("k") is value
        assert await session_store.read("k") is None

    @pytest.mark.asyncio
    async def test_slow_read_failure_is_a_miss(self):
        """Test a slow-tier read error is treated as a miss."""
        broken = AsyncMock()
        broken.read.side_effect = OSError("locked")
        cache = TieredCache(broken)

        assert await cache.get("k") is None
        assert cache.get_stats()["misses"] == 1


class TestSqliteSessionStore:
    """Tests for SqliteSessionStore."""

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, session_store: SqliteSessionStore, tmp_path):
        """Test two sessions sharing a file do not see each other's entries."""
        other = SqliteSessionStore(tmp_path / "cache.db", session_id="session-b")
        try:
            await session_store.write("k", '"a"', 1.0, 10.0)
            await other.write("k", '"b"', 1.0, 10.0)

            assert (await session_store.read("k"))[0] == '"a"'
            assert (await other.read("k"))[0] == '"b"'

            await other.clear()
            assert await other.read("k") is None
            assert await session_store.read("k") is not None
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_rejects_oversized_payload(self, session_store: SqliteSessionStore):
        """Test payloads over the size limit are refused."""
        with pytest.raises(ValueError):
            await session_store.write("big", "x" * (MAX_SERIALIZED_BYTES + 1), 0.0, 10.0)

    @pytest.mark.asyncio
    async def test_oversized_value_degrades_to_memory(self, session_store: SqliteSessionStore):
        """Test the cache keeps an oversized value in memory."""
        cache = TieredCache(session_store)
        big = "x" * (MAX_SERIALIZED_BYTES + 10)

        await cache.set("big", big)

        assert await cache.get("big") == big
        assert await session_store.read("big") is None


def test_insights_cache_key():
    """Test insight cache keys combine item and kind."""
    assert insights_cache_key("char-1", "character") == "insights:char-1:character"
