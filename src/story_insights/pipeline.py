"""
Insight Pipeline

Constructs the analysis components once and wires them together:

    TieredCache ──┬─> ViewDataLoader
                  │
    RateLimiterClient ─┬─> AnalysisServiceClient ─> RequestDeduplicator ─> BatchScheduler
    ContentRepository ─┘                 │
                                         └─> InsightStore (observed by the UI layer)

Use from_config() for a configured instance, or pass components directly
(tests build isolated pipelines this way).
"""

import asyncio
import logging
from typing import Any, Iterable

from .analysis_client import AnalysisServiceClient, TokenCounter
from .cache import SqliteSessionStore, TieredCache, insights_cache_key
from .config import InsightConfig
from .dedup import RequestDeduplicator
from .errors import ValidationError
from .loader import LoadOptions, ViewDataLoader
from .models import (
    AIInsight,
    AnalysisKind,
    AnalysisResponse,
    AnalysisStatus,
    ContentItem,
    RateLimitInfo,
)
from .profiling import profile_latency
from .progress import ProgressCallback
from .rate_limiter import HttpQuotaService, RateLimiterClient, SqliteUsageTracker
from .repository import AnalysisRecord, ContentRepository, SqliteContentRepository
from .scheduler import BatchOptions, BatchScheduler
from .store import InsightStore
from .transports import AnalysisTransport, HttpAnalysisTransport, OpenAIAnalysisTransport

logger = logging.getLogger(__name__)


RATE_LIMIT_CACHE_KEY = "rate-limit"
NEEDS_ANALYSIS_STATUSES = (AnalysisStatus.UNANALYZED, AnalysisStatus.PENDING, AnalysisStatus.FAILED)


def item_insights_key(item_id: str) -> str:
    """Cache key for the visible insights of one item, across kinds."""
    return f"item-insights:{item_id}"


def build_transport(config: InsightConfig) -> AnalysisTransport:
    """Analysis transport for the configured backend."""
    if config.analysis_backend == "openai":
        return OpenAIAnalysisTransport(
            api_key=config.openai_api_key,
            model=config.model,
            base_url=config.openai_base_url,
            max_tokens=config.max_completion_tokens,
            temperature=config.temperature,
            prompt_content_chars=config.prompt_content_chars,
            timeout=config.request_timeout_seconds,
        )
    return HttpAnalysisTransport(
        config.analysis_url, config.api_key, timeout=config.request_timeout_seconds
    )


def build_quota_service(config: InsightConfig) -> HttpQuotaService | SqliteUsageTracker:
    """Quota source for the configured backend."""
    if config.quota_backend == "local":
        return SqliteUsageTracker(
            config.content_db_path, config.hourly_limit, config.daily_limit
        )
    return HttpQuotaService(config.quota_url, config.api_key)


class InsightPipeline:
    """Facade over the analysis components."""

    def __init__(
        self,
        transport: AnalysisTransport,
        limiter: RateLimiterClient,
        repository: ContentRepository,
        cache: TieredCache | None = None,
        store: InsightStore | None = None,
        config: InsightConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        self.config = config or InsightConfig()
        self.transport = transport
        self.limiter = limiter
        self.repository = repository
        self.cache = cache or TieredCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
        )
        self.store = store or InsightStore()
        self.loader = ViewDataLoader(self.cache)
        self.deduplicator = RequestDeduplicator()
        self.client = AnalysisServiceClient(
            transport,
            limiter,
            repository,
            store=self.store,
            cache=self.cache,
            token_counter=token_counter,
            timeout=self.config.request_timeout_seconds,
            max_content_tokens=self.config.max_content_tokens,
        )
        self.scheduler = BatchScheduler(
            self.client,
            self.deduplicator,
            limiter,
            repository,
            store=self.store,
            cache=self.cache,
        )
        self._closables: list[Any] = []

    @classmethod
    def from_config(cls, config: InsightConfig | None = None) -> "InsightPipeline":
        """Build a pipeline with SQLite persistence and the configured backends."""
        config = config or InsightConfig()
        errors = config.validate()
        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))

        quota_service = build_quota_service(config)
        session_store = SqliteSessionStore(config.cache_db_path, config.session_id)
        repository = SqliteContentRepository(config.content_db_path)
        transport = build_transport(config)

        pipeline = cls(
            transport=transport,
            limiter=RateLimiterClient(
                quota_service,
                hourly_limit=config.hourly_limit,
                daily_limit=config.daily_limit,
                freshness_seconds=config.limiter_freshness_seconds,
            ),
            repository=repository,
            cache=TieredCache(
                session_store,
                ttl_seconds=config.cache_ttl_seconds,
                max_entries=config.cache_max_entries,
            ),
            config=config,
            token_counter=TokenCounter(config.model if config.analysis_backend == "openai" else "gpt-4"),
        )
        pipeline._closables = [transport, quota_service, session_store, repository]
        return pipeline

    async def initialize(self, start_polling: bool = True) -> None:
        for component in self._closables:
            if hasattr(component, "initialize"):
                await component.initialize()
        if start_polling and self.config.limiter_poll_seconds > 0:
            self.limiter.start_polling(self.config.limiter_poll_seconds)
        logger.info("[PIPELINE] initialized")

    async def close(self) -> None:
        await self.limiter.stop_polling()
        for component in self._closables:
            try:
                await component.close()
            except Exception as e:
                logger.warning(f"[PIPELINE] error closing {type(component).__name__}: {e}")
        self._closables = []

    async def __aenter__(self) -> "InsightPipeline":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Analysis

    async def register_items(self, items: Iterable[ContentItem]) -> None:
        """Mirror content items into the repository so they can be retried later."""
        for item in items:
            await self.repository.upsert(item)

    @profile_latency("analyze_many")
    async def analyze_many(
        self,
        items: Iterable[ContentItem],
        force: bool = False,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        batch_size: int | None = None,
        delay_seconds: float | None = None,
    ) -> list[AnalysisResponse]:
        """Analyze items in paced batches using configured batch settings."""
        options = BatchOptions(
            batch_size=batch_size or self.config.batch_size,
            delay_seconds=self.config.batch_delay_seconds if delay_seconds is None else delay_seconds,
            force=force,
            progress=progress,
        )
        responses = await self.scheduler.analyze_many(items, options, cancel_event)
        for response in responses:
            await self.loader.clear(item_insights_key(response.item_id))
        return responses

    async def analyze_item(self, item: ContentItem, force: bool = False) -> AnalysisResponse:
        """Analyze a single item through the same path as a batch of one."""
        responses = await self.analyze_many([item], force=force, batch_size=1, delay_seconds=0)
        return responses[0]

    async def retry(self, item_id: str) -> AnalysisResponse:
        """Re-analyze an item whose last attempt failed."""
        record = await self.repository.get_record(item_id)
        if record.status != AnalysisStatus.FAILED:
            raise ValidationError(
                f"Only failed items can be retried (status: {record.status.value})", item_id
            )
        item = await self.repository.get(item_id)
        if item is None:
            raise ValidationError(f"Unknown content item: {item_id}", item_id)
        return await self.analyze_item(item, force=True)

    # Insights

    async def get_insights(self, item_id: str, refresh: bool = False) -> list[AIInsight]:
        """Visible insights for an item, read through the view cache."""

        async def fetch() -> list[dict[str, Any]]:
            record = await self.repository.get_record(item_id)
            return [i.to_dict() for i in record.insights if not i.dismissed]

        options = LoadOptions(
            retry_count=self.config.loader_retry_count,
            retry_delay_seconds=self.config.loader_retry_delay_seconds,
            force_refresh=refresh,
        )
        result = await self.loader.load(item_insights_key(item_id), fetch, options)
        if result.error is not None:
            raise result.error
        return [AIInsight.from_dict(d) for d in result.data or []]

    async def dismiss_insight(self, item_id: str, insight_id: str) -> bool:
        """Dismiss one insight. Dismissing twice is a no-op that returns False."""
        record = await self.repository.get_record(item_id)
        target = next((i for i in record.insights if i.id == insight_id), None)

        changed = await self.repository.dismiss_insight(item_id, insight_id)
        self.store.dismiss(insight_id)
        if changed and target is not None:
            await self.cache.invalidate(insights_cache_key(item_id, target.kind.value))
            await self.loader.clear(item_insights_key(item_id))
        return changed

    async def clear_insights(self, item_id: str) -> None:
        """Remove all insights for an item and return it to unanalyzed."""
        await self.repository.clear_insights(item_id)
        await self.repository.set_status(item_id, AnalysisStatus.UNANALYZED)
        self.store.clear_item(item_id)
        self.store.set_status(item_id, AnalysisStatus.UNANALYZED)
        for kind in AnalysisKind:
            await self.cache.invalidate(insights_cache_key(item_id, kind.value))
        await self.loader.clear(item_insights_key(item_id))

    # Status and reporting

    async def rate_limit_status(self, refresh: bool = False) -> RateLimitInfo:
        """Current quota reading, cached for the limiter freshness window."""

        async def fetch() -> dict[str, Any]:
            return (await self.limiter.check()).to_dict()

        options = LoadOptions(
            ttl_seconds=self.config.limiter_freshness_seconds,
            retry_count=0,
            force_refresh=refresh,
        )
        result = await self.loader.load(RATE_LIMIT_CACHE_KEY, fetch, options)
        if result.error is not None:
            raise result.error
        info = RateLimitInfo.from_dict(result.data)
        self.store.set_rate_limit_info(info)
        return info

    async def status(self, item_id: str) -> AnalysisRecord:
        return await self.repository.get_record(item_id)

    async def history(self, limit: int = 50) -> list[AnalysisRecord]:
        return await self.repository.history(limit)

    async def items_needing_analysis(self) -> list[ContentItem]:
        """Known items that are unanalyzed, pending or failed."""
        items: list[ContentItem] = []
        for status in NEEDS_ANALYSIS_STATUSES:
            items.extend(await self.repository.list_by_status(status))
        return items

    async def statistics(self) -> dict[str, Any]:
        stats = await self.repository.statistics()
        stats["cache"] = self.cache.get_stats()
        stats["limiter"] = self.limiter.get_stats()
        stats["deduplicator"] = self.deduplicator.get_stats()
        stats["client"] = self.client.get_stats()
        return stats
