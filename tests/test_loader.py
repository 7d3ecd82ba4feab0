"""
Tests for the view-data loader: read-through caching, retry and single-flight.
"""

import asyncio

import pytest

from story_insights.cache import TieredCache
from story_insights.errors import MalformedResponseError, TransientServiceError
from story_insights.loader import LoadOptions, ViewDataLoader

from conftest import FakeClock


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FlakyLoader:
    """Fails a set number of times, then returns a value."""

    def __init__(self, failures: int, error: Exception | None = None, value="data"):
        self.failures = failures
        self.error = error or TransientServiceError("HTTP 503")
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def loader(clock, sleep) -> ViewDataLoader:
    return ViewDataLoader(TieredCache(ttl_seconds=300, clock=clock), sleep=sleep, clock=clock)


class TestViewDataLoader:
    """Tests for ViewDataLoader.load."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, loader):
        """Test the loader runs once and the second call is a cache hit."""
        fetch = FlakyLoader(0)

        first = await loader.load("chars", fetch)
        second = await loader.load("chars", fetch)

        assert first.data == "data" and not first.cache_hit
        assert second.data == "data" and second.cache_hit
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_expired_entry_reloads(self, loader, clock):
        """Test an entry past its ttl is reloaded."""
        fetch = FlakyLoader(0)

        await loader.load("chars", fetch, LoadOptions(ttl_seconds=60))
        clock.advance(60)
        result = await loader.load("chars", fetch, LoadOptions(ttl_seconds=60))

        assert not result.cache_hit
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff(self, loader, sleep):
        """Test two failures then success makes three calls with 1s then 2s delays."""
        fetch = FlakyLoader(2)

        result = await loader.load("chars", fetch, LoadOptions(retry_count=2, retry_delay_seconds=1.0))

        assert result.ok
        assert result.data == "data"
        assert result.attempts == 3
        assert fetch.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_error(self, loader, sleep):
        """Test persistent failure reports the last error without caching."""
        fetch = FlakyLoader(10)

        result = await loader.load("chars", fetch, LoadOptions(retry_count=2))

        assert not result.ok
        assert isinstance(result.error, TransientServiceError)
        assert fetch.calls == 3
        assert await loader.cache.get("chars") is None

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self, loader, sleep):
        """Test a malformed response is not retried."""
        fetch = FlakyLoader(10, error=MalformedResponseError("bad shape"))

        result = await loader.load("chars", fetch)

        assert isinstance(result.error, MalformedResponseError)
        assert fetch.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_call(self, clock):
        """Test concurrent loads of one key invoke the loader once."""
        loader = ViewDataLoader(TieredCache(clock=clock), clock=clock)
        calls = 0

        async def slow_fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return [1, 2, 3]

        first, second = await asyncio.gather(
            loader.load("stats", slow_fetch),
            loader.load("stats", slow_fetch),
        )

        assert first.data == second.data == [1, 2, 3]
        assert calls == 1
        assert not loader.is_loading("stats")

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_joined_load(self, clock):
        """Test a caller that joined a load still gets it when the first caller is cancelled."""
        loader = ViewDataLoader(TieredCache(clock=clock), clock=clock)
        release = asyncio.Event()
        calls = 0

        async def gated_fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"total": 4}

        first = asyncio.ensure_future(loader.load("stats", gated_fetch))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(loader.load("stats", gated_fetch))
        await asyncio.sleep(0.01)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        release.set()
        result = await second

        assert result.data == {"total": 4}
        assert calls == 1
        assert await loader.cache.get("stats") == {"total": 4}
        assert not loader.is_loading("stats")

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, loader):
        """Test refresh reloads even with a live entry."""
        fetch = FlakyLoader(0)
        await loader.load("chars", fetch)

        fetch.value = "newer"
        result = await loader.refresh("chars", fetch)

        assert result.data == "newer"
        assert (await loader.load("chars", fetch)).data == "newer"

    @pytest.mark.asyncio
    async def test_preload_and_clear(self, loader):
        """Test preload warms the cache and clear drops it."""
        fetch = FlakyLoader(0)

        assert await loader.preload("chars", fetch) is True
        assert (await loader.load("chars", fetch)).cache_hit

        await loader.clear("chars")
        assert not (await loader.load("chars", fetch)).cache_hit
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_preload_reports_failure(self, loader):
        fetch = FlakyLoader(10, error=MalformedResponseError("bad"))

        assert await loader.preload("chars", fetch) is False
