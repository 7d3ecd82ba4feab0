"""
Rate limiter client.

Queries the caller's hourly/daily analysis quota and keeps the most recent
reading as advisory state. Every dispatch re-validates against that state and
refuses to proceed when it says the quota is exhausted, even if the reading is
slightly stale. A failed quota query yields an exhausted reading (fail closed).

Quota sources:
- HttpQuotaService: remote quota endpoint
- SqliteUsageTracker: local usage table counting analyses per hour and per UTC day
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import aiosqlite
import httpx

from .errors import RateLimitError
from .models import RateLimitInfo

logger = logging.getLogger(__name__)


DEFAULT_HOURLY_LIMIT = 10
DEFAULT_DAILY_LIMIT = 50
DEFAULT_FRESHNESS_SECONDS = 300.0
DEFAULT_POLL_SECONDS = 300.0
QUOTA_REQUEST_TIMEOUT_SECONDS = 10.0


class QuotaService(Protocol):
    """Source of truth for quota usage."""

    async def fetch(self) -> RateLimitInfo:
        ...

    async def record_usage(self) -> None:
        ...


class HttpQuotaService:
    """Quota endpoint returning {allowed, hourly_count, hourly_limit, daily_count, daily_limit, reset_time}."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = QUOTA_REQUEST_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.api_key = api_key
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def fetch(self) -> RateLimitInfo:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        response = await self._http_client.get(self.url, headers=headers)
        response.raise_for_status()
        return RateLimitInfo.from_dict(response.json())

    async def record_usage(self) -> None:
        # The remote service counts usage on its side.
        return None

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


class SqliteUsageTracker:
    """Local quota: one row per dispatched analysis."""

    def __init__(
        self,
        db_path: Path | str,
        hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        user_id: str = "local",
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit
        self.user_id = user_id
        self._clock = clock
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS ai_usage (
                user_id TEXT NOT NULL,
                used_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_ai_usage_user_time ON ai_usage(user_id, used_at);
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def record_usage(self) -> None:
        await self.initialize()
        await self._db.execute(
            "INSERT INTO ai_usage (user_id, used_at) VALUES (?, ?)",
            (self.user_id, self._clock()),
        )
        await self._db.commit()

    async def fetch(self) -> RateLimitInfo:
        await self.initialize()
        now = self._clock()
        now_dt = datetime.fromtimestamp(now, timezone.utc)
        day_start = now_dt.replace(hour=0, minute=0, second=0, microsecond=0)

        async with self._db.execute(
            "SELECT COUNT(*), MIN(used_at) FROM ai_usage WHERE user_id = ? AND used_at > ?",
            (self.user_id, now - 3600),
        ) as cursor:
            hourly_count, oldest_in_hour = await cursor.fetchone()

        async with self._db.execute(
            "SELECT COUNT(*) FROM ai_usage WHERE user_id = ? AND used_at >= ?",
            (self.user_id, day_start.timestamp()),
        ) as cursor:
            (daily_count,) = await cursor.fetchone()

        if daily_count >= self.daily_limit:
            reset_time = day_start + timedelta(days=1)
        elif hourly_count >= self.hourly_limit and oldest_in_hour is not None:
            reset_time = datetime.fromtimestamp(oldest_in_hour + 3600, timezone.utc)
        else:
            reset_time = now_dt + timedelta(hours=1)

        return RateLimitInfo(
            allowed=hourly_count < self.hourly_limit and daily_count < self.daily_limit,
            hourly_count=hourly_count,
            hourly_limit=self.hourly_limit,
            daily_count=daily_count,
            daily_limit=self.daily_limit,
            reset_time=reset_time,
            checked_at=now,
        )


def describe_limit(info: RateLimitInfo) -> str:
    """User-facing explanation of an exhausted quota."""
    return (
        f"Rate limit reached ({info.hourly_count}/{info.hourly_limit} this hour, "
        f"{info.daily_count}/{info.daily_limit} today). "
        f"Capacity returns at {info.reset_time.isoformat()}"
    )


class RateLimiterClient:
    """Live quota checks plus the last known reading."""

    def __init__(
        self,
        quota_service: QuotaService,
        hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.quota_service = quota_service
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit
        self.freshness_seconds = freshness_seconds
        self._clock = clock
        self._last_info: RateLimitInfo | None = None
        self._poll_task: asyncio.Task | None = None
        self._check_count = 0
        self._fallback_count = 0
        self._reserved = 0

    @property
    def last_info(self) -> RateLimitInfo | None:
        return self._last_info

    async def check(self) -> RateLimitInfo:
        """Query the quota service. Never raises; failures return an exhausted reading."""
        self._check_count += 1
        try:
            info = await self.quota_service.fetch()
        except Exception as e:
            self._fallback_count += 1
            logger.warning(f"[LIMITER] quota query failed, failing closed: {type(e).__name__}: {e}")
            info = RateLimitInfo.exhausted(self.hourly_limit, self.daily_limit)

        info.checked_at = self._clock()
        self._last_info = info
        return info

    def is_fresh(self, max_age: float | None = None) -> bool:
        if self._last_info is None:
            return False
        limit = self.freshness_seconds if max_age is None else max_age
        return self._last_info.age(self._clock()) < limit

    async def ensure_allowed(self, item_id: str | None = None) -> RateLimitInfo:
        """
        Re-validate before a dispatch and reserve one unit of quota.

        Refreshes the reading only when it is older than the freshness window,
        then raises RateLimitError if the reading plus the dispatches already
        in flight would exceed either limit. No await separates the capacity
        check from the reservation. Every successful call must be followed by
        exactly one record_dispatch() or release().
        """
        if not self.is_fresh():
            await self.check()

        info = self._last_info
        if info is None or not self._has_capacity(info):
            info = info or RateLimitInfo.exhausted(self.hourly_limit, self.daily_limit)
            raise RateLimitError(describe_limit(info), info, item_id)
        self._reserved += 1
        return info

    def _has_capacity(self, info: RateLimitInfo) -> bool:
        return (
            not info.is_exhausted
            and info.hourly_count + self._reserved < info.hourly_limit
            and info.daily_count + self._reserved < info.daily_limit
        )

    def release(self) -> None:
        """Return a reservation whose request never got a response."""
        if self._reserved > 0:
            self._reserved -= 1

    async def record_dispatch(self) -> None:
        """Turn one reservation into usage on the local reading and the quota source."""
        self.release()
        info = self._last_info
        if info is not None:
            info.hourly_count += 1
            info.daily_count += 1
            if info.is_exhausted:
                info.allowed = False
        try:
            await self.quota_service.record_usage()
        except Exception as e:
            logger.warning(f"[LIMITER] failed to record usage: {type(e).__name__}: {e}")

    def mark_exhausted(self, info: RateLimitInfo | None = None) -> None:
        """Adopt a limit reported by the analysis boundary (e.g. HTTP 429)."""
        info = info or RateLimitInfo.exhausted(self.hourly_limit, self.daily_limit)
        info.allowed = False
        info.checked_at = self._clock()
        self._last_info = info

    def start_polling(self, interval: float = DEFAULT_POLL_SECONDS) -> None:
        """Refresh the reading in the background every `interval` seconds."""
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop(interval))

    async def stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None

    async def _poll_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            info = await self.check()
            logger.debug(
                f"[LIMITER] poll: allowed={info.allowed} "
                f"hourly={info.hourly_count}/{info.hourly_limit} daily={info.daily_count}/{info.daily_limit}"
            )

    def get_stats(self) -> dict[str, Any]:
        """Get limiter statistics."""
        info = self._last_info
        return {
            "checks": self._check_count,
            "fallbacks": self._fallback_count,
            "reserved": self._reserved,
            "polling": self._poll_task is not None and not self._poll_task.done(),
            "last_info": info.to_dict() if info else None,
            "fresh": self.is_fresh(),
        }
