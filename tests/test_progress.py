"""
Tests for progress reporting and latency profiling helpers.
"""

import logging

import pytest

from story_insights.profiling import LatencyTracker, profile_latency
from story_insights.progress import (
    LoggingProgressCallback,
    ProgressCallback,
    ProgressEvent,
    ProgressEventType,
    ProgressTracker,
)


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_percentage(self):
        assert ProgressEvent(ProgressEventType.ITEM_SETTLED, current=1, total=4).percentage == 25.0
        assert ProgressEvent(ProgressEventType.STARTED).percentage == 0.0

    def test_failing_callback_is_contained(self, caplog):
        """Test a raising callback is logged and the tracker keeps counting."""

        class Broken(ProgressCallback):
            def on_progress(self, event):
                raise RuntimeError("ui went away")

        tracker = ProgressTracker(total=2, batch_count=1, callback=Broken())

        with caplog.at_level(logging.WARNING):
            tracker.on_item_settled("a", "completed", 0)
            tracker.on_item_settled("b", "failed", 0)

        assert tracker.settled == 2
        assert "callback failed" in caplog.text

    def test_default_callback_logs(self, caplog):
        tracker = ProgressTracker(total=3, batch_count=2)
        assert isinstance(tracker.callback, LoggingProgressCallback)

        with caplog.at_level(logging.INFO):
            tracker.on_started()
            tracker.on_cancelled(2)

        assert "3 items in 2 batches" in caplog.text
        assert "2 items not scheduled" in caplog.text


class TestProfiling:
    """Tests for profile_latency and LatencyTracker."""

    @pytest.mark.asyncio
    async def test_async_function(self, caplog):
        @profile_latency("fetch")
        async def fetch(x):
            return x * 2

        with caplog.at_level(logging.INFO):
            assert await fetch(21) == 42

        assert "[LATENCY] fetch:" in caplog.text

    @pytest.mark.asyncio
    async def test_logs_on_error(self, caplog):
        @profile_latency("parse")
        async def parse():
            raise ValueError("bad")

        with caplog.at_level(logging.INFO):
            with pytest.raises(ValueError):
                await parse()

        assert "[LATENCY] parse:" in caplog.text

    def test_tracker_records_elapsed(self):
        with LatencyTracker("block") as tracker:
            pass

        assert tracker.elapsed_ms >= 0
        assert tracker.start_time is not None
