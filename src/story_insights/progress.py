"""
Progress callbacks for batch analysis runs.

The batch scheduler reports progress through a ProgressTracker, which fires
ProgressEvent objects at a ProgressCallback. The default callback logs them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ProgressEventType(Enum):
    """Types of progress events during a batch run."""
    STARTED = "started"
    BATCH_STARTED = "batch_started"
    ITEM_SETTLED = "item_settled"
    BATCH_COMPLETED = "batch_completed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass
class ProgressEvent:
    """A progress update event."""
    type: ProgressEventType
    message: str = ""
    item_id: str = ""
    status: str = ""
    batch_index: int = 0
    batch_count: int = 0
    current: int = 0
    total: int = 0

    @property
    def percentage(self) -> float:
        return (self.current / self.total * 100) if self.total else 0.0


class ProgressCallback:
    """Base class for progress callbacks."""

    def on_progress(self, event: ProgressEvent) -> None:
        """Handle a progress event."""
        raise NotImplementedError


class LoggingProgressCallback(ProgressCallback):
    """Logs progress events."""

    def on_progress(self, event: ProgressEvent) -> None:
        if event.type == ProgressEventType.STARTED:
            logger.info(f"[PROGRESS] Analysis started: {event.total} items in {event.batch_count} batches")
        elif event.type == ProgressEventType.BATCH_STARTED:
            logger.info(f"[PROGRESS] Batch {event.batch_index + 1}/{event.batch_count} started")
        elif event.type == ProgressEventType.ITEM_SETTLED:
            logger.debug(
                f"[PROGRESS] {event.item_id}: {event.status} "
                f"({event.current}/{event.total}, {event.percentage:.0f}%)"
            )
        elif event.type == ProgressEventType.BATCH_COMPLETED:
            logger.info(f"[PROGRESS] Batch {event.batch_index + 1}/{event.batch_count} completed")
        elif event.type == ProgressEventType.CANCELLED:
            logger.warning(f"[PROGRESS] Cancelled: {event.message}")
        elif event.type == ProgressEventType.COMPLETED:
            logger.info(f"[PROGRESS] Analysis completed: {event.current}/{event.total} items settled")


class ProgressTracker:
    """Tracks settled items and fires callbacks."""

    def __init__(self, total: int, batch_count: int, callback: Optional[ProgressCallback] = None):
        self.callback = callback or LoggingProgressCallback()
        self.total = total
        self.batch_count = batch_count
        self.settled = 0

    def _fire(self, event: ProgressEvent) -> None:
        try:
            self.callback.on_progress(event)
        except Exception as e:
            logger.warning(f"[PROGRESS] callback failed: {type(e).__name__}: {e}")

    def on_started(self):
        self._fire(ProgressEvent(
            type=ProgressEventType.STARTED,
            batch_count=self.batch_count,
            total=self.total,
        ))

    def on_batch_started(self, batch_index: int):
        self._fire(ProgressEvent(
            type=ProgressEventType.BATCH_STARTED,
            batch_index=batch_index,
            batch_count=self.batch_count,
            current=self.settled,
            total=self.total,
        ))

    def on_item_settled(self, item_id: str, status: str, batch_index: int):
        self.settled += 1
        self._fire(ProgressEvent(
            type=ProgressEventType.ITEM_SETTLED,
            item_id=item_id,
            status=status,
            batch_index=batch_index,
            batch_count=self.batch_count,
            current=self.settled,
            total=self.total,
        ))

    def on_batch_completed(self, batch_index: int):
        self._fire(ProgressEvent(
            type=ProgressEventType.BATCH_COMPLETED,
            batch_index=batch_index,
            batch_count=self.batch_count,
            current=self.settled,
            total=self.total,
        ))

    def on_cancelled(self, unscheduled: int):
        self._fire(ProgressEvent(
            type=ProgressEventType.CANCELLED,
            message=f"{unscheduled} items not scheduled",
            current=self.settled,
            total=self.total,
        ))

    def on_completed(self):
        self._fire(ProgressEvent(
            type=ProgressEventType.COMPLETED,
            current=self.settled,
            total=self.total,
        ))
