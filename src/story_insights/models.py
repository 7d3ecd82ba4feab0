"""
Data model for the analysis pipeline.

Content items are owned by the surrounding application; this package only
reads their text and writes the analysis fields (status, insights,
last-analyzed timestamp).
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import PermanentServiceError

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO8601 string (with or without 'Z') into an aware datetime."""
    if value is None or isinstance(value, datetime):
        return value
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AnalysisKind(str, Enum):
    """Category of content being analyzed; selects the prompt and request shape."""

    CHARACTER = "character"
    PLOT = "plot"
    RESEARCH = "research"
    CHAPTER = "chapter"


class AnalysisStatus(str, Enum):
    """Per-item analysis state."""

    UNANALYZED = "unanalyzed"
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED, AnalysisStatus.SKIPPED)


def resolve_kind(value: "AnalysisKind | str") -> AnalysisKind:
    """
    Map a content-kind tag onto an AnalysisKind.

    This is the single canonical mapping: enum members pass through, strings
    are matched case-insensitively, anything else is rejected.
    """
    if isinstance(value, AnalysisKind):
        return value
    if isinstance(value, str):
        try:
            return AnalysisKind(value.strip().lower())
        except ValueError:
            pass
    raise PermanentServiceError(f"Unsupported content kind: {value!r}")


@dataclass
class ContentItem:
    """A piece of user content eligible for analysis."""

    id: str
    content: str
    kind: AnalysisKind
    word_count: int = 0
    status: AnalysisStatus = AnalysisStatus.UNANALYZED
    title: str = ""

    def __post_init__(self):
        self.kind = resolve_kind(self.kind)
        self.status = AnalysisStatus(self.status)
        if not self.word_count and self.content:
            self.word_count = len(self.content.split())


def extract_content(item: ContentItem) -> str:
    """Text submitted for analysis; blank means the item is skipped."""
    return (item.content or "").strip()


@dataclass(frozen=True)
class AnalysisRequest:
    """One analysis attempt for one item and one kind."""

    item_id: str
    content: str
    kind: AnalysisKind
    submitted_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        """Wire shape sent to the analysis boundary."""
        return {
            "content": self.content,
            "contentType": self.kind.value,
            "itemId": self.item_id,
        }


@dataclass
class AIInsight:
    """One structured result of an analysis run."""

    item_id: str
    kind: AnalysisKind
    insight_type: str
    summary: str
    suggestions: list[str] = field(default_factory=list)
    confidence: float = 0.0
    details: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)
    dismissed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "kind": self.kind.value,
            "type": self.insight_type,
            "summary": self.summary,
            "suggestions": list(self.suggestions),
            "confidence": self.confidence,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
            "dismissed": self.dismissed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AIInsight":
        return cls(
            id=data["id"],
            item_id=data["item_id"],
            kind=resolve_kind(data["kind"]),
            insight_type=data.get("type", ""),
            summary=data.get("summary", ""),
            suggestions=list(data.get("suggestions", [])),
            confidence=float(data.get("confidence", 0.0)),
            details=data.get("details"),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            dismissed=bool(data.get("dismissed", False)),
        )


@dataclass
class RateLimitInfo:
    """Quota reading. Advisory: re-validated before every dispatch."""

    allowed: bool
    hourly_count: int
    hourly_limit: int
    daily_count: int
    daily_limit: int
    reset_time: datetime
    checked_at: float = field(default_factory=time.time)

    @property
    def remaining_hourly(self) -> int:
        return max(0, self.hourly_limit - self.hourly_count)

    @property
    def remaining_daily(self) -> int:
        return max(0, self.daily_limit - self.daily_count)

    @property
    def is_exhausted(self) -> bool:
        return (
            not self.allowed
            or self.hourly_count >= self.hourly_limit
            or self.daily_count >= self.daily_limit
        )

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.checked_at

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitInfo":
        """Parse the quota service response shape."""
        return cls(
            allowed=bool(data["allowed"]),
            hourly_count=int(data["hourly_count"]),
            hourly_limit=int(data["hourly_limit"]),
            daily_count=int(data["daily_count"]),
            daily_limit=int(data["daily_limit"]),
            reset_time=parse_timestamp(data["reset_time"]),
        )

    @classmethod
    def exhausted(cls, hourly_limit: int, daily_limit: int, reset_after_seconds: float = 3600) -> "RateLimitInfo":
        """Fail-closed reading used when the true quota is unknown."""
        return cls(
            allowed=False,
            hourly_count=hourly_limit,
            hourly_limit=hourly_limit,
            daily_count=daily_limit,
            daily_limit=daily_limit,
            reset_time=utc_now() + timedelta(seconds=reset_after_seconds),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "hourly_count": self.hourly_count,
            "hourly_limit": self.hourly_limit,
            "daily_count": self.daily_count,
            "daily_limit": self.daily_limit,
            "reset_time": self.reset_time.isoformat(),
        }


@dataclass
class AnalysisResponse:
    """Outcome of analyzing one item, success or failure."""

    item_id: str
    kind: AnalysisKind | None
    status: AnalysisStatus
    insights: list[AIInsight] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    processing_time_ms: int = 0
    tokens_used: int = 0
    from_cache: bool = False
    reset_time: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == AnalysisStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "kind": self.kind.value if self.kind else None,
            "success": self.success,
            "status": self.status.value,
            "insights": [insight.to_dict() for insight in self.insights],
            "error": self.error,
            "error_type": self.error_type,
            "processing_time_ms": self.processing_time_ms,
            "tokens_used": self.tokens_used,
            "from_cache": self.from_cache,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
        }


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with its write time; valid while younger than ttl."""

    value: T
    written_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.written_at < self.ttl
