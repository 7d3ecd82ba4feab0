"""
Pytest configuration and fixtures for Story Insights tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from story_insights.analysis_client import AnalysisServiceClient, TokenCounter
from story_insights.cache import SqliteSessionStore, TieredCache
from story_insights.config import InsightConfig
from story_insights.dedup import RequestDeduplicator
from story_insights.models import AnalysisKind, AnalysisRequest, ContentItem, RateLimitInfo
from story_insights.pipeline import InsightPipeline
from story_insights.rate_limiter import RateLimiterClient
from story_insights.repository import InMemoryContentRepository, SqliteContentRepository
from story_insights.scheduler import BatchScheduler
from story_insights.store import InsightStore


BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = BASE_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WordEncoder:
    """Stands in for a tiktoken encoding: one token per word."""

    def encode(self, text: str) -> list[str]:
        return text.split()


class FakeQuotaService:
    """Quota source with a scripted reading."""

    def __init__(self, hourly_count: int = 0, daily_count: int = 0, hourly_limit: int = 100, daily_limit: int = 500):
        self.hourly_count = hourly_count
        self.daily_count = daily_count
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit
        self.fail = False
        self.fetch_calls = 0
        self.usage_recorded = 0

    async def fetch(self) -> RateLimitInfo:
        self.fetch_calls += 1
        if self.fail:
            raise ConnectionError("quota service unreachable")
        return RateLimitInfo(
            allowed=self.hourly_count < self.hourly_limit and self.daily_count < self.daily_limit,
            hourly_count=self.hourly_count,
            hourly_limit=self.hourly_limit,
            daily_count=self.daily_count,
            daily_limit=self.daily_limit,
            reset_time=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def record_usage(self) -> None:
        self.usage_recorded += 1
        self.hourly_count += 1
        self.daily_count += 1


def insight_body(*summaries: str, insight_type: str = "character_development") -> dict[str, Any]:
    """Successful analysis response body."""
    return {
        "success": True,
        "insights": [
            {
                "type": insight_type,
                "summary": summary,
                "suggestions": [f"expand on {summary}"],
                "confidence": 0.8,
                "details": {"strengths": ["voice"]},
            }
            for summary in summaries
        ],
    }


class FakeTransport:
    """
    Analysis transport with scripted outcomes.

    outcomes maps item_id to a response body or an exception to raise;
    delays maps item_id to seconds to wait before answering.
    """

    def __init__(self):
        self.outcomes: dict[str, Any] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[AnalysisRequest] = []
        self.completion_order: list[str] = []
        self.active = 0
        self.max_active = 0
        self.gate: asyncio.Event | None = None
        self.on_send = None
        self.closed = False

    async def send(self, request: AnalysisRequest) -> dict[str, Any]:
        self.calls.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_send is not None:
                self.on_send(request)
            if self.gate is not None:
                await self.gate.wait()
            delay = self.delays.get(request.item_id, 0)
            if delay:
                await asyncio.sleep(delay)
            outcome = self.outcomes.get(request.item_id, insight_body(f"insight for {request.item_id}"))
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.active -= 1
            self.completion_order.append(request.item_id)

    def called_ids(self) -> list[str]:
        return [r.item_id for r in self.calls]

    async def close(self) -> None:
        self.closed = True


def make_item(item_id: str, content: str | None = None, kind: AnalysisKind = AnalysisKind.CHARACTER) -> ContentItem:
    return ContentItem(
        id=item_id,
        content=f"Content of {item_id} with a few words" if content is None else content,
        kind=kind,
        title=item_id.title(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_counter() -> TokenCounter:
    return TokenCounter(encoder=WordEncoder())


@pytest.fixture
def quota_service() -> FakeQuotaService:
    return FakeQuotaService()


@pytest.fixture
def limiter(quota_service: FakeQuotaService) -> RateLimiterClient:
    return RateLimiterClient(quota_service, hourly_limit=10, daily_limit=50)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def repository() -> InMemoryContentRepository:
    return InMemoryContentRepository()


@pytest.fixture
def store() -> InsightStore:
    return InsightStore()


@pytest.fixture
def cache() -> TieredCache:
    return TieredCache(ttl_seconds=300)


@pytest.fixture
def client(transport, limiter, repository, store, cache, token_counter) -> AnalysisServiceClient:
    return AnalysisServiceClient(
        transport, limiter, repository, store=store, cache=cache, token_counter=token_counter, timeout=5
    )


@pytest.fixture
def scheduler(client, limiter, repository, store, cache) -> BatchScheduler:
    return BatchScheduler(client, RequestDeduplicator(), limiter, repository, store=store, cache=cache)


@pytest.fixture
def insight_config(tmp_path: Path) -> InsightConfig:
    """Create a test configuration."""
    return InsightConfig(
        analysis_backend="http",
        analysis_url="http://analysis.test/analyze",
        quota_url="http://analysis.test/quota",
        api_key="test-api-key",
        batch_size=3,
        batch_delay_seconds=0.0,
        cache_db_path=tmp_path / "cache.db",
        content_db_path=tmp_path / "content.db",
        session_id="test-session",
        loader_retry_count=2,
        loader_retry_delay_seconds=0.0,
    )


@pytest_asyncio.fixture
async def pipeline(
    transport, limiter, repository, store, token_counter, insight_config
) -> AsyncGenerator[InsightPipeline, None]:
    pipeline = InsightPipeline(
        transport=transport,
        limiter=limiter,
        repository=repository,
        store=store,
        config=insight_config,
        token_counter=token_counter,
    )
    await pipeline.initialize(start_polling=False)
    yield pipeline
    await pipeline.close()


@pytest_asyncio.fixture
async def session_store(tmp_path: Path) -> AsyncGenerator[SqliteSessionStore, None]:
    store = SqliteSessionStore(tmp_path / "cache.db", session_id="session-a")
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def sqlite_repository(tmp_path: Path) -> AsyncGenerator[SqliteContentRepository, None]:
    repo = SqliteContentRepository(tmp_path / "content.db")
    await repo.initialize()
    yield repo
    await repo.close()
