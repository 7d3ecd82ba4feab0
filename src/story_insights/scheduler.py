"""
Batch Scheduler

Runs analysis over many items:

1. Every item is marked pending before any network activity.
2. One live limiter check gates the whole run; a denial fails the run.
3. Items are split into fixed-size batches. Each batch is dispatched
   concurrently and settles completely before the next one starts.
4. A pacing delay separates consecutive batches.
5. Blank items are skipped without a dispatch.
6. One AnalysisResponse per item comes back in submission order.

Per-item failures become failed responses; only structural problems raise.
Cancellation (event or task cancellation) lets the current batch settle and
returns unscheduled items to unanalyzed.
"""

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Iterable, Sequence, TypeVar

from .analysis_client import AnalysisServiceClient
from .cache import TieredCache, insights_cache_key
from .dedup import RequestDeduplicator
from .errors import AnalysisError, BatchPreconditionError, RateLimitError, ValidationError
from .models import (
    AIInsight,
    AnalysisResponse,
    AnalysisStatus,
    ContentItem,
    extract_content,
)
from .progress import ProgressCallback, ProgressTracker
from .rate_limiter import RateLimiterClient, describe_limit
from .repository import ContentRepository
from .store import InsightStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 3
DEFAULT_BATCH_DELAY_SECONDS = 1.0


@dataclass
class BatchOptions:
    """Options for one analyze_many run."""

    batch_size: int = DEFAULT_BATCH_SIZE
    delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS
    force: bool = False
    progress: ProgressCallback | None = None

    def validate(self) -> None:
        if self.batch_size < 1:
            raise BatchPreconditionError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.delay_seconds < 0:
            raise BatchPreconditionError(f"delay_seconds must not be negative, got {self.delay_seconds}")


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive chunks of at most `size`."""
    if size < 1:
        raise BatchPreconditionError(f"batch size must be at least 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def failure_response(item: ContentItem, error: BaseException) -> AnalysisResponse:
    """Failed AnalysisResponse for an item whose dispatch raised."""
    if isinstance(error, AnalysisError):
        error_type = error.kind
    elif isinstance(error, asyncio.CancelledError):
        error_type = "cancelled"
    else:
        error_type = "error"
    return AnalysisResponse(
        item_id=item.id,
        kind=item.kind,
        status=AnalysisStatus.FAILED,
        error=str(error) or type(error).__name__,
        error_type=error_type,
        reset_time=error.reset_time if isinstance(error, RateLimitError) else None,
    )


class BatchScheduler:
    """Paced, batched fan-out over the analysis client."""

    def __init__(
        self,
        client: AnalysisServiceClient,
        deduplicator: RequestDeduplicator,
        limiter: RateLimiterClient,
        repository: ContentRepository,
        store: InsightStore | None = None,
        cache: TieredCache | None = None,
    ):
        self.client = client
        self.deduplicator = deduplicator
        self.limiter = limiter
        self.repository = repository
        self.store = store
        self.cache = cache

    async def _set_status(self, item_id: str, status: AnalysisStatus, error: str | None = None) -> None:
        await self.repository.set_status(item_id, status)
        if self.store is not None:
            self.store.set_status(item_id, status, error)

    async def analyze_many(
        self,
        items: Iterable[ContentItem],
        options: BatchOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[AnalysisResponse]:
        """
        Analyze items in paced batches.

        Args:
            items: Items to analyze, in the order results should come back
            options: Batch size, pacing delay, force re-analysis, progress callback
            cancel_event: When set, no further batches are scheduled

        Returns:
            One AnalysisResponse per item, in submission order

        Raises:
            BatchPreconditionError: No items or invalid options
            RateLimitError: Quota exhausted (or unknown) before any dispatch
        """
        options = options or BatchOptions()
        options.validate()
        items = list(items)
        if not items:
            raise BatchPreconditionError("No items to analyze")

        prior_status = {}
        for item in items:
            prior_status[item.id] = (await self.repository.get_record(item.id)).status

        for item in items:
            await self._set_status(item.id, AnalysisStatus.PENDING)

        # Blank items never consume quota, so an all-blank run skips the check
        info = None
        if any(extract_content(item) for item in items):
            info = await self.limiter.check()
            if self.store is not None:
                self.store.set_rate_limit_info(info)
        if info is not None and info.is_exhausted:
            message = describe_limit(info)
            logger.warning(f"[BATCH] refused {len(items)} items: {message}")
            for item in items:
                if extract_content(item):
                    await self._set_status(item.id, AnalysisStatus.FAILED, message)
                else:
                    await self._set_status(item.id, AnalysisStatus.SKIPPED)
            raise RateLimitError(message, info)

        indexed = list(enumerate(items))
        batches = partition(indexed, options.batch_size)
        results: list[AnalysisResponse | None] = [None] * len(items)
        tracker = ProgressTracker(len(items), len(batches), options.progress)
        tracker.on_started()
        logger.info(f"[BATCH] {len(items)} items in {len(batches)} batches of {options.batch_size}")

        settled_batches = 0
        task_cancelled = False

        with self.store.analyzing() if self.store is not None else nullcontext():
            try:
                for batch_index, batch in enumerate(batches):
                    if batch_index > 0 and await self._pace(options.delay_seconds, cancel_event):
                        break
                    if cancel_event is not None and cancel_event.is_set():
                        break

                    tracker.on_batch_started(batch_index)
                    running = asyncio.ensure_future(
                        self._run_batch(batch_index, batch, options, prior_status, results, tracker)
                    )
                    try:
                        await asyncio.shield(running)
                    except asyncio.CancelledError:
                        task_cancelled = True
                        await running
                        settled_batches = batch_index + 1
                        raise
                    settled_batches = batch_index + 1
                    tracker.on_batch_completed(batch_index)
            except asyncio.CancelledError:
                task_cancelled = True

            unscheduled = [pair for batch in batches[settled_batches:] for pair in batch]
            if unscheduled:
                await self._release(unscheduled, results)
                tracker.on_cancelled(len(unscheduled))
                logger.info(f"[BATCH] cancelled, {len(unscheduled)} items returned to unanalyzed")

        if task_cancelled:
            raise asyncio.CancelledError()

        tracker.on_completed()
        return results

    async def _pace(self, delay: float, cancel_event: asyncio.Event | None) -> bool:
        """Wait out the inter-batch delay. Returns True if cancelled meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_batch(
        self,
        batch_index: int,
        batch: list[tuple[int, ContentItem]],
        options: BatchOptions,
        prior_status: dict[str, AnalysisStatus],
        results: list[AnalysisResponse | None],
        tracker: ProgressTracker,
    ) -> None:
        """Dispatch one batch and wait for every item to settle."""

        async def settle(index: int, item: ContentItem) -> None:
            try:
                response = await self._dispatch(item, options, prior_status.get(item.id))
            except Exception as e:
                response = failure_response(item, e)
            results[index] = response
            tracker.on_item_settled(item.id, response.status.value, batch_index)

        outcomes = await asyncio.gather(
            *(settle(index, item) for index, item in batch), return_exceptions=True
        )
        for (index, item), outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException) and results[index] is None:
                results[index] = failure_response(item, outcome)

    async def _dispatch(
        self, item: ContentItem, options: BatchOptions, prior: AnalysisStatus | None
    ) -> AnalysisResponse:
        content = extract_content(item)
        if not content:
            await self._set_status(item.id, AnalysisStatus.SKIPPED)
            return AnalysisResponse(
                item_id=item.id,
                kind=item.kind,
                status=AnalysisStatus.SKIPPED,
                error="No content to analyze",
                error_type=ValidationError.kind,
            )

        if not options.force and prior == AnalysisStatus.COMPLETED:
            cached = await self._from_cache(item)
            if cached is not None:
                return cached

        try:
            return await self.deduplicator.submit(
                item.id,
                item.kind,
                lambda: self.client.analyze(item.id, content, item.kind),
                join=True,
            )
        except AnalysisError as e:
            return failure_response(item, e)

    async def _from_cache(self, item: ContentItem) -> AnalysisResponse | None:
        if self.cache is None:
            return None
        cached = await self.cache.get(insights_cache_key(item.id, item.kind.value))
        if cached is None:
            return None

        insights = [AIInsight.from_dict(d) for d in cached]
        await self._set_status(item.id, AnalysisStatus.COMPLETED)
        if self.store is not None:
            self.store.replace_insights(item.id, item.kind, insights)
        logger.debug(f"[BATCH] {item.id} answered from cache")
        return AnalysisResponse(
            item_id=item.id,
            kind=item.kind,
            status=AnalysisStatus.COMPLETED,
            insights=insights,
            from_cache=True,
        )

    async def _release(
        self, pairs: list[tuple[int, ContentItem]], results: list[AnalysisResponse | None]
    ) -> None:
        """Return never-dispatched items to unanalyzed."""
        for index, item in pairs:
            await self._set_status(item.id, AnalysisStatus.UNANALYZED)
            results[index] = AnalysisResponse(
                item_id=item.id,
                kind=item.kind,
                status=AnalysisStatus.UNANALYZED,
                error="Analysis cancelled before dispatch",
                error_type="cancelled",
            )
