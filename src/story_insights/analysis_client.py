"""
Analysis Service Client

Performs one analysis exchange for one content item and one analysis kind,
and keeps the item's persisted analysis fields in step with it:

    (limiter check) -> analyzing -> send -> parse -> persist -> completed
                                                   \\-> failed (typed error re-raised)

Status changes and replaced insights are written to the repository and to the
insight store before analyze() returns, success or failure.
"""

import asyncio
import logging
import math
import time
from typing import Any

import tiktoken

from .cache import TieredCache, insights_cache_key
from .errors import (
    AnalysisError,
    MalformedResponseError,
    PermanentServiceError,
    RateLimitError,
    TransientServiceError,
    ValidationError,
)
from .models import (
    AIInsight,
    AnalysisKind,
    AnalysisRequest,
    AnalysisResponse,
    AnalysisStatus,
    RateLimitInfo,
    resolve_kind,
)
from .rate_limiter import RateLimiterClient
from .repository import ContentRepository
from .store import InsightStore
from .transports import AnalysisTransport

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_CONTENT_TOKENS = 8000


class TokenCounter:
    """Counts tokens of submitted content with a lazily loaded tiktoken encoder."""

    def __init__(self, model: str = "gpt-4", encoder: Any = None):
        self.model = model
        self._encoder = encoder

    @property
    def encoder(self) -> tiktoken.Encoding:
        """Lazy-load tiktoken encoder."""
        if self._encoder is None:
            try:
                self._encoder = tiktoken.encoding_for_model(self.model)
            except KeyError:
                # Models served from a custom base URL are unknown to tiktoken
                self._encoder = tiktoken.get_encoding("cl100k_base")
        return self._encoder

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoder.encode(text))


def _reported_rate_limit(body: dict[str, Any]) -> RateLimitInfo | None:
    try:
        return RateLimitInfo.from_dict(body)
    except (KeyError, TypeError, ValueError):
        return None


def _parse_insight(raw: Any, item_id: str, kind: AnalysisKind) -> AIInsight:
    if not isinstance(raw, dict):
        raise MalformedResponseError(f"Insight entry is not an object: {raw!r}", item_id)

    insight_type = raw.get("type")
    summary = raw.get("summary")
    if not isinstance(insight_type, str) or not isinstance(summary, str) or not summary:
        raise MalformedResponseError("Insight entry needs string 'type' and 'summary'", item_id)

    suggestions = raw.get("suggestions", [])
    if not isinstance(suggestions, list) or not all(isinstance(s, str) for s in suggestions):
        raise MalformedResponseError("Insight 'suggestions' must be a list of strings", item_id)

    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or math.isnan(confidence):
        raise MalformedResponseError(f"Insight 'confidence' is not a number: {confidence!r}", item_id)

    details = raw.get("details")
    if details is not None and not isinstance(details, dict):
        raise MalformedResponseError("Insight 'details' must be an object", item_id)

    return AIInsight(
        item_id=item_id,
        kind=kind,
        insight_type=insight_type,
        summary=summary,
        suggestions=list(suggestions),
        confidence=min(1.0, max(0.0, float(confidence))),
        details=details,
    )


def parse_insights(body: Any, item_id: str, kind: AnalysisKind) -> list[AIInsight]:
    """
    Validate a boundary response and turn it into AIInsight records.

    Raises:
        RateLimitError: body reports success=false with a quota reading
        PermanentServiceError: body reports success=false for any other reason
        MalformedResponseError: body does not match the insight contract
    """
    if not isinstance(body, dict):
        raise MalformedResponseError("Analysis response is not an object", item_id)

    if body.get("success") is not True:
        message = body.get("error") or "Analysis service reported failure"
        info = _reported_rate_limit(body)
        if info is not None and info.is_exhausted:
            raise RateLimitError(str(message), info, item_id)
        if "rate limit" in str(message).lower():
            raise RateLimitError(str(message), None, item_id)
        raise PermanentServiceError(str(message), item_id)

    raw_insights = body.get("insights")
    if not isinstance(raw_insights, list):
        raise MalformedResponseError("Analysis response has no 'insights' list", item_id)

    return [_parse_insight(raw, item_id, kind) for raw in raw_insights]


class AnalysisServiceClient:
    """Single-item analysis against the external boundary."""

    def __init__(
        self,
        transport: AnalysisTransport,
        limiter: RateLimiterClient,
        repository: ContentRepository,
        store: InsightStore | None = None,
        cache: TieredCache | None = None,
        token_counter: TokenCounter | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_content_tokens: int = DEFAULT_MAX_CONTENT_TOKENS,
    ):
        self.transport = transport
        self.limiter = limiter
        self.repository = repository
        self.store = store
        self.cache = cache
        self.token_counter = token_counter or TokenCounter()
        self.timeout = timeout
        self.max_content_tokens = max_content_tokens

        self._calls = 0
        self._failures = 0

    async def _set_status(self, item_id: str, status: AnalysisStatus, error: str | None = None) -> None:
        await self.repository.set_status(item_id, status)
        if self.store is not None:
            self.store.set_status(item_id, status, error)

    async def analyze(
        self, item_id: str, content: str, kind: AnalysisKind | str
    ) -> AnalysisResponse:
        """
        Analyze one item.

        Returns a completed AnalysisResponse. Any failure sets the item's
        status to failed (skipped for empty content) and re-raises a typed
        AnalysisError.
        """
        kind = resolve_kind(kind)
        content = (content or "").strip()
        if not content:
            await self._set_status(item_id, AnalysisStatus.SKIPPED)
            raise ValidationError("No content to analyze", item_id)

        start = time.perf_counter()
        try:
            tokens = self.token_counter.count(content)
            if tokens > self.max_content_tokens:
                raise PermanentServiceError(
                    f"Content too large ({tokens:,} tokens > {self.max_content_tokens:,})", item_id
                )

            await self.limiter.ensure_allowed(item_id)
            try:
                await self._set_status(item_id, AnalysisStatus.ANALYZING)
                request = AnalysisRequest(item_id=item_id, content=content, kind=kind)
                self._calls += 1
                body = await self._send(request)
            except BaseException:
                self.limiter.release()
                raise
            await self.limiter.record_dispatch()
            insights = self._parse(body, request)

            merged = await self.repository.replace_insights(item_id, kind, insights)
            if self.store is not None:
                self.store.replace_insights(item_id, kind, insights)
            if self.cache is not None:
                await self.cache.set(
                    insights_cache_key(item_id, kind.value), [i.to_dict() for i in insights]
                )
            await self._set_status(item_id, AnalysisStatus.COMPLETED)

        except AnalysisError as e:
            self._failures += 1
            if e.item_id is None:
                e.item_id = item_id
            logger.warning(f"[ANALYZE] {item_id} ({kind.value}) failed [{e.kind}]: {e}")
            await self._set_status(item_id, AnalysisStatus.FAILED, str(e))
            raise
        except Exception as e:
            self._failures += 1
            logger.error(f"[ANALYZE] {item_id} ({kind.value}) unexpected error: {type(e).__name__}: {e}")
            await self._set_status(item_id, AnalysisStatus.FAILED, f"{type(e).__name__}: {e}")
            raise

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"[ANALYZE] {item_id} ({kind.value}): {len(insights)} insights, "
            f"{tokens} tokens, {len(merged)} stored"
        )
        logger.debug(f"[LATENCY] analyze {item_id}: {elapsed_ms}ms")

        return AnalysisResponse(
            item_id=item_id,
            kind=kind,
            status=AnalysisStatus.COMPLETED,
            insights=insights,
            processing_time_ms=elapsed_ms,
            tokens_used=tokens,
        )

    async def _send(self, request: AnalysisRequest) -> Any:
        """Send one request under the timeout."""
        try:
            return await asyncio.wait_for(self.transport.send(request), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientServiceError(
                f"Analysis timed out after {self.timeout}s", request.item_id
            ) from e
        except RateLimitError as e:
            self.limiter.mark_exhausted(e.rate_limit_info)
            raise

    def _parse(self, body: Any, request: AnalysisRequest) -> list[AIInsight]:
        try:
            return parse_insights(body, request.item_id, request.kind)
        except RateLimitError as e:
            self.limiter.mark_exhausted(e.rate_limit_info)
            raise

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics."""
        return {"calls": self._calls, "failures": self._failures}
