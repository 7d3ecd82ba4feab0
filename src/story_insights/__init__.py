"""
Story Insights

Coordinates on-demand AI analysis of story content: turns character sheets,
plot notes, research and chapters into structured insights from an external
analysis service, while

- respecting a hard hourly/daily rate limit (failing closed when unknown)
- never running two attempts for the same item and kind at once
- surviving partial failures in paced batch runs
- caching results in memory and in a session-scoped SQLite tier with TTLs

Exposed to clients as an MCP stdio server.
"""

__version__ = "0.3.0"

from .server import main, create_server
from .pipeline import InsightPipeline
from .scheduler import BatchOptions, BatchScheduler
from .analysis_client import AnalysisServiceClient
from .dedup import RequestDeduplicator
from .cache import TieredCache
from .loader import LoadOptions, LoadResult, ViewDataLoader
from .rate_limiter import RateLimiterClient
from .store import InsightStore
from .models import (
    AIInsight,
    AnalysisKind,
    AnalysisResponse,
    AnalysisStatus,
    ContentItem,
    RateLimitInfo,
)
from .errors import (
    AnalysisError,
    RateLimitError,
    TransientServiceError,
    MalformedResponseError,
    PermanentServiceError,
    ValidationError,
    BatchPreconditionError,
)

__all__ = [
    "main",
    "create_server",
    "InsightPipeline",
    "BatchOptions",
    "BatchScheduler",
    "AnalysisServiceClient",
    "RequestDeduplicator",
    "TieredCache",
    "LoadOptions",
    "LoadResult",
    "ViewDataLoader",
    "RateLimiterClient",
    "InsightStore",
    "AIInsight",
    "AnalysisKind",
    "AnalysisResponse",
    "AnalysisStatus",
    "ContentItem",
    "RateLimitInfo",
    "AnalysisError",
    "RateLimitError",
    "TransientServiceError",
    "MalformedResponseError",
    "PermanentServiceError",
    "ValidationError",
    "BatchPreconditionError",
]
