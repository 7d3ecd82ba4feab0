"""
Configuration for the Story Insights analysis pipeline

Environment Variables:
- INSIGHTS_BACKEND: "http" (post to INSIGHTS_ANALYSIS_URL) or "openai" (call the model directly)
- INSIGHTS_ANALYSIS_URL: Endpoint accepting {content, contentType, itemId}
- INSIGHTS_QUOTA_URL: Endpoint returning the caller's hourly/daily quota usage
- INSIGHTS_API_KEY: Bearer token for both endpoints
- OPENAI_API_KEY: Required when INSIGHTS_BACKEND=openai
- INSIGHTS_MODEL: Model for direct analysis (default: gpt-4o-mini)
- INSIGHTS_QUOTA_BACKEND: "http" (query INSIGHTS_QUOTA_URL) or "local" (count usage in SQLite)

Everything else has a sensible default and can be overridden per field.
"""

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
from dotenv import load_dotenv

load_dotenv()


DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_DATA_DIR = Path.home() / ".story-insights"


@dataclass
class InsightConfig:
    """Configuration for analysis dispatch, caching and rate limiting."""

    # Analysis boundary
    analysis_backend: Literal["http", "openai"] = field(
        default_factory=lambda: os.getenv("INSIGHTS_BACKEND", "http")  # type: ignore
    )
    analysis_url: str = field(default_factory=lambda: os.getenv("INSIGHTS_ANALYSIS_URL", ""))
    quota_url: str = field(default_factory=lambda: os.getenv("INSIGHTS_QUOTA_URL", ""))
    api_key: str = field(default_factory=lambda: os.getenv("INSIGHTS_API_KEY", ""))

    # Direct model access (INSIGHTS_BACKEND=openai)
    openai_api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    openai_base_url: str = field(
        default_factory=lambda: os.getenv("INSIGHTS_OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    model: str = field(default_factory=lambda: os.getenv("INSIGHTS_MODEL", DEFAULT_MODEL))
    max_completion_tokens: int = 1000
    temperature: float = 0.3

    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("INSIGHTS_REQUEST_TIMEOUT", "60"))
    )
    max_content_tokens: int = field(
        default_factory=lambda: int(os.getenv("INSIGHTS_MAX_CONTENT_TOKENS", "8000"))
    )
    prompt_content_chars: int = 2000

    # Batch scheduling
    batch_size: int = field(default_factory=lambda: int(os.getenv("INSIGHTS_BATCH_SIZE", "3")))
    batch_delay_seconds: float = field(
        default_factory=lambda: float(os.getenv("INSIGHTS_BATCH_DELAY", "1.0"))
    )

    # Cache tiers
    cache_ttl_seconds: float = field(
        default_factory=lambda: float(os.getenv("INSIGHTS_CACHE_TTL", "300"))
    )
    cache_max_entries: int = 1000
    cache_db_path: Path = field(
        default_factory=lambda: Path(os.getenv("INSIGHTS_CACHE_DB", str(DEFAULT_DATA_DIR / "cache.db")))
    )
    session_id: str = field(
        default_factory=lambda: os.getenv("INSIGHTS_SESSION_ID", uuid.uuid4().hex)
    )

    # Content records
    content_db_path: Path = field(
        default_factory=lambda: Path(os.getenv("INSIGHTS_CONTENT_DB", str(DEFAULT_DATA_DIR / "content.db")))
    )

    # Rate limiting
    quota_backend: Literal["http", "local"] = field(
        default_factory=lambda: os.getenv("INSIGHTS_QUOTA_BACKEND", "http")  # type: ignore
    )
    hourly_limit: int = field(default_factory=lambda: int(os.getenv("INSIGHTS_HOURLY_LIMIT", "10")))
    daily_limit: int = field(default_factory=lambda: int(os.getenv("INSIGHTS_DAILY_LIMIT", "50")))
    limiter_freshness_seconds: float = 300.0
    limiter_poll_seconds: float = 300.0

    # View-data loader
    loader_retry_count: int = 2
    loader_retry_delay_seconds: float = 1.0

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.analysis_backend not in ("http", "openai"):
            errors.append(f"Unknown INSIGHTS_BACKEND: {self.analysis_backend!r}")
        elif self.analysis_backend == "http" and not self.analysis_url:
            errors.append("INSIGHTS_ANALYSIS_URL environment variable not set")
        elif self.analysis_backend == "openai" and not self.openai_api_key:
            errors.append("OPENAI_API_KEY environment variable not set")

        if self.quota_backend not in ("http", "local"):
            errors.append(f"Unknown INSIGHTS_QUOTA_BACKEND: {self.quota_backend!r}")
        elif self.quota_backend == "http" and not self.quota_url:
            errors.append("INSIGHTS_QUOTA_URL environment variable not set")

        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")

        if self.batch_delay_seconds < 0:
            errors.append("batch_delay_seconds must not be negative")

        if self.cache_ttl_seconds <= 0:
            errors.append("cache_ttl_seconds must be positive")

        if self.hourly_limit < 1 or self.daily_limit < 1:
            errors.append("hourly_limit and daily_limit must be at least 1")

        return errors


@dataclass
class ServerConfig:
    """Configuration for the MCP server."""

    name: str = "story-insights"
    version: str = "0.3.0"
    description: str = (
        "MCP server coordinating on-demand AI analysis of story content "
        "(characters, plots, research notes, chapters)"
    )

    # Server limits
    max_items_per_call: int = 200
    operation_timeout_seconds: int = 600


def get_config() -> tuple[InsightConfig, ServerConfig]:
    """Get configuration instances."""
    return InsightConfig(), ServerConfig()
