"""
Insight store: in-memory view state for the calling UI layer.

Holds the latest insights and per-item status, and notifies subscribers after
every effective change. All mutators are idempotent: repeating an identical
call changes nothing and notifies no one.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator

from .models import AIInsight, AnalysisKind, AnalysisStatus, RateLimitInfo

logger = logging.getLogger(__name__)

Listener = Callable[["InsightStore"], None]

NEEDS_ANALYSIS = (AnalysisStatus.UNANALYZED, AnalysisStatus.PENDING, AnalysisStatus.FAILED)


class InsightStore:
    """Observable container of insights and analysis status."""

    def __init__(self):
        self._insights: list[AIInsight] = []
        self._statuses: dict[str, AnalysisStatus] = {}
        self._errors: dict[str, str] = {}
        self._active_operations = 0
        self._last_error: str | None = None
        self._rate_limit_info: RateLimitInfo | None = None
        self._listeners: list[Listener] = []

    # Observation

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning(f"[STORE] listener {listener!r} failed: {type(e).__name__}: {e}")

    # State

    @property
    def insights(self) -> list[AIInsight]:
        """Current, non-dismissed insights."""
        return [i for i in self._insights if not i.dismissed]

    @property
    def statuses(self) -> dict[str, AnalysisStatus]:
        return dict(self._statuses)

    @property
    def is_analyzing(self) -> bool:
        return self._active_operations > 0 or any(
            s == AnalysisStatus.ANALYZING for s in self._statuses.values()
        )

    @property
    def error(self) -> str | None:
        return self._last_error

    @property
    def rate_limit_info(self) -> RateLimitInfo | None:
        return self._rate_limit_info

    def status_of(self, item_id: str) -> AnalysisStatus:
        return self._statuses.get(item_id, AnalysisStatus.UNANALYZED)

    def error_of(self, item_id: str) -> str | None:
        return self._errors.get(item_id)

    def has_analysis(self, item_id: str) -> bool:
        return item_id in self._statuses

    def for_item(self, item_id: str) -> list[AIInsight]:
        return [i for i in self._insights if i.item_id == item_id and not i.dismissed]

    def count_for_item(self, item_id: str) -> int:
        return len(self.for_item(item_id))

    def items_with_status(self, status: AnalysisStatus) -> list[str]:
        return [item_id for item_id, s in self._statuses.items() if s == status]

    def items_needing_analysis(self, item_ids: Iterable[str]) -> list[str]:
        return [item_id for item_id in item_ids if self.status_of(item_id) in NEEDS_ANALYSIS]

    # Mutation

    def set_status(self, item_id: str, status: AnalysisStatus, error: str | None = None) -> None:
        changed = self._statuses.get(item_id) != status or self._errors.get(item_id) != error
        if not changed:
            return
        self._statuses[item_id] = status
        if error:
            self._errors[item_id] = error
            self._last_error = error
        else:
            self._errors.pop(item_id, None)
        self._notify()

    def replace_insights(self, item_id: str, kind: AnalysisKind, insights: list[AIInsight]) -> None:
        """Supersede this item's insights of `kind` with a new run's output."""
        insights = list(insights)
        superseded = [i for i in self._insights if i.item_id == item_id and i.kind == kind]
        if superseded == insights:
            return
        self._insights = [
            i for i in self._insights if not (i.item_id == item_id and i.kind == kind)
        ] + insights
        self._notify()

    def dismiss(self, insight_id: str) -> bool:
        """Hide one insight. Returns False if it was unknown or already dismissed."""
        for insight in self._insights:
            if insight.id == insight_id:
                if insight.dismissed:
                    return False
                insight.dismissed = True
                self._notify()
                return True
        return False

    def clear_item(self, item_id: str) -> None:
        before = len(self._insights)
        self._insights = [i for i in self._insights if i.item_id != item_id]
        if len(self._insights) != before:
            self._notify()

    def clear_all(self) -> None:
        if not (self._insights or self._statuses or self._errors or self._last_error):
            return
        self._insights = []
        self._statuses = {}
        self._errors = {}
        self._last_error = None
        self._notify()

    def set_rate_limit_info(self, info: RateLimitInfo | None) -> None:
        if info == self._rate_limit_info:
            return
        self._rate_limit_info = info
        self._notify()

    def dismiss_error(self) -> None:
        if self._last_error is not None:
            self._last_error = None
            self._notify()

    @contextmanager
    def analyzing(self) -> Iterator[None]:
        """Mark an operation in progress for the duration of the block."""
        self._active_operations += 1
        self._notify()
        try:
            yield
        finally:
            self._active_operations -= 1
            self._notify()

    def snapshot(self) -> dict[str, Any]:
        """Plain-data view of the store."""
        return {
            "is_analyzing": self.is_analyzing,
            "statuses": {k: v.value for k, v in self._statuses.items()},
            "errors": dict(self._errors),
            "insights": [i.to_dict() for i in self.insights],
            "rate_limit": self._rate_limit_info.to_dict() if self._rate_limit_info else None,
        }
