"""
View-Data Loader

Read-through caching for any async fetch:

- cache hit: returned immediately, loader not invoked
- miss: loader invoked, result cached; failures retried with linear backoff
  (retry_delay * attempt) up to retry_count times
- concurrent loads of one key share a single loader invocation

Errors that retrying cannot fix (rate limits, malformed responses, permanent
and validation errors) are surfaced after the first attempt.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .cache import TieredCache
from .errors import AnalysisError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_COUNT = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0


@dataclass
class LoadOptions:
    """Per-call loader options."""

    ttl_seconds: float | None = None
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    force_refresh: bool = False


@dataclass
class LoadResult(Generic[T]):
    """Outcome of one load."""

    data: T | None = None
    is_loading: bool = False
    error: Exception | None = None
    cache_hit: bool = False
    last_updated: float | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, AnalysisError):
        return error.retryable
    return True


class ViewDataLoader:
    """Applies a TieredCache to async data fetches."""

    def __init__(
        self,
        cache: TieredCache,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self._sleep = sleep
        self._clock = clock
        self._in_flight: dict[str, asyncio.Future] = {}

    def is_loading(self, key: str) -> bool:
        return key in self._in_flight

    async def load(
        self,
        key: str,
        loader_fn: Callable[[], Awaitable[T]],
        options: LoadOptions | None = None,
    ) -> LoadResult[T]:
        """Return cached data for key, or load, cache and return it."""
        options = options or LoadOptions()

        if not options.force_refresh:
            entry = await self.cache.lookup(key)
            if entry is not None:
                return LoadResult(data=entry.value, cache_hit=True, last_updated=entry.written_at)

        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug(f"[LOADER] joining in-flight load: {key}")
            return await asyncio.shield(existing)

        # Own task: cancelling one caller leaves the load running for the rest
        task = asyncio.ensure_future(self._load_with_retry(key, loader_fn, options))
        self._in_flight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _load_with_retry(
        self, key: str, loader_fn: Callable[[], Awaitable[T]], options: LoadOptions
    ) -> LoadResult[T]:
        last_error: Exception | None = None
        attempt = 0

        while attempt <= options.retry_count:
            attempt += 1
            try:
                data = await loader_fn()
            except Exception as e:
                last_error = e
                if not _is_retryable(e) or attempt > options.retry_count:
                    break
                delay = options.retry_delay_seconds * attempt
                logger.warning(
                    f"[LOADER] {key} attempt {attempt} failed ({type(e).__name__}: {e}), "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue

            await self.cache.set(key, data, options.ttl_seconds)
            return LoadResult(data=data, last_updated=self._clock(), attempts=attempt)

        logger.error(f"[LOADER] {key} failed after {attempt} attempts: {last_error}")
        return LoadResult(error=last_error, attempts=attempt)

    async def refresh(
        self,
        key: str,
        loader_fn: Callable[[], Awaitable[T]],
        options: LoadOptions | None = None,
    ) -> LoadResult[T]:
        """Bypass the cache and reload."""
        options = dataclasses.replace(options or LoadOptions(), force_refresh=True)
        return await self.load(key, loader_fn, options)

    async def preload(
        self,
        key: str,
        loader_fn: Callable[[], Awaitable[T]],
        options: LoadOptions | None = None,
    ) -> bool:
        """Warm the cache for key. Returns True when data is now cached."""
        result = await self.load(key, loader_fn, options)
        return result.ok

    async def clear(self, key: str | None = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            await self.cache.clear()
        else:
            await self.cache.invalidate(key)
