"""
Error taxonomy for content analysis.

Every failure that concerns one content item derives from AnalysisError so the
batch scheduler can record it on that item and keep going. The `kind` label
ends up in AnalysisResponse.error_type.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import RateLimitInfo


class AnalysisError(Exception):
    """Base class for analysis failures."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, item_id: str | None = None):
        super().__init__(message)
        self.item_id = item_id


class RateLimitError(AnalysisError):
    """Quota exhausted. Never retried automatically."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        rate_limit_info: "RateLimitInfo | None" = None,
        item_id: str | None = None,
    ):
        super().__init__(message, item_id)
        self.rate_limit_info = rate_limit_info

    @property
    def reset_time(self):
        return self.rate_limit_info.reset_time if self.rate_limit_info else None


class TransientServiceError(AnalysisError):
    """Network, timeout or 5xx failure."""

    kind = "transient"
    retryable = True


class MalformedResponseError(AnalysisError):
    """Response payload did not match the insight contract."""

    kind = "malformed_response"


class PermanentServiceError(AnalysisError):
    """Request can never succeed as sent (content too large, unknown kind, 4xx)."""

    kind = "permanent"


class ValidationError(AnalysisError):
    """Empty or missing content; handled before any network call."""

    kind = "validation"


class BatchPreconditionError(AnalysisError):
    """A batch call was structurally invalid (no items, bad options)."""

    kind = "precondition"
