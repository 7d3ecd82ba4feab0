"""
Integration tests for InsightPipeline.

Components are wired the way the server wires them, with a scripted transport
and quota source in place of the network.
"""

import dataclasses

import pytest

from story_insights.config import InsightConfig
from story_insights.errors import MalformedResponseError, ValidationError
from story_insights.models import AnalysisStatus
from story_insights.pipeline import InsightPipeline, item_insights_key

from conftest import insight_body, make_item


class TestAnalysis:
    """Tests for analyze_many, analyze_item and retry."""

    @pytest.mark.asyncio
    async def test_analyze_many_then_get_insights(self, pipeline, transport):
        """Test analyzed insights are visible through get_insights."""
        items = [make_item("a"), make_item("b")]
        await pipeline.register_items(items)

        responses = await pipeline.analyze_many(items)

        assert [r.success for r in responses] == [True, True]
        insights = await pipeline.get_insights("a")
        assert [i.summary for i in insights] == ["insight for a"]
        assert pipeline.store.status_of("b") == AnalysisStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reanalysis_refreshes_item_view(self, pipeline, transport):
        """Test a new run is visible even after the item view was cached."""
        item = make_item("a")
        await pipeline.analyze_item(item)
        await pipeline.get_insights("a")

        transport.outcomes["a"] = insight_body("rewritten")
        await pipeline.analyze_item(item, force=True)

        assert [i.summary for i in await pipeline.get_insights("a")] == ["rewritten"]

    @pytest.mark.asyncio
    async def test_retry_failed_item(self, pipeline, transport):
        """Test a failed item can be retried and completes."""
        item = make_item("a")
        await pipeline.register_items([item])
        transport.outcomes["a"] = MalformedResponseError("bad shape")
        failed = await pipeline.analyze_item(item)
        assert failed.status == AnalysisStatus.FAILED

        del transport.outcomes["a"]
        retried = await pipeline.retry("a")

        assert retried.success
        assert (await pipeline.status("a")).status == AnalysisStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_rejects_non_failed_item(self, pipeline):
        """Test retry is only for failed items."""
        item = make_item("a")
        await pipeline.register_items([item])
        await pipeline.analyze_item(item)

        with pytest.raises(ValidationError):
            await pipeline.retry("a")

    @pytest.mark.asyncio
    async def test_retry_unknown_item(self, pipeline, repository):
        """Test a failed record with no content cannot be retried."""
        await repository.set_status("ghost", AnalysisStatus.FAILED)

        with pytest.raises(ValidationError, match="Unknown content item"):
            await pipeline.retry("ghost")

    @pytest.mark.asyncio
    async def test_items_needing_analysis(self, pipeline, transport):
        """Test completed items drop out of the needs-analysis list."""
        items = [make_item("a"), make_item("b"), make_item("c")]
        await pipeline.register_items(items)
        transport.outcomes["b"] = MalformedResponseError("bad")

        await pipeline.analyze_many(items[:2])

        needing = await pipeline.items_needing_analysis()
        assert sorted(i.id for i in needing) == ["b", "c"]


class TestInsights:
    """Tests for dismiss and clear."""

    @pytest.mark.asyncio
    async def test_dismiss_hides_insight_everywhere(self, pipeline, transport):
        """Test a dismissed insight leaves the store, the repository view and the item cache."""
        transport.outcomes["a"] = insight_body("keep", "drop")
        await pipeline.analyze_item(make_item("a"))
        insights = await pipeline.get_insights("a")
        drop = next(i for i in insights if i.summary == "drop")

        assert await pipeline.dismiss_insight("a", drop.id) is True
        assert await pipeline.dismiss_insight("a", drop.id) is False

        assert [i.summary for i in await pipeline.get_insights("a")] == ["keep"]
        assert [i.summary for i in pipeline.store.for_item("a")] == ["keep"]

    @pytest.mark.asyncio
    async def test_clear_insights_resets_item(self, pipeline, transport):
        """Test clearing returns the item to unanalyzed and forces a fresh dispatch."""
        item = make_item("a")
        await pipeline.analyze_item(item)

        await pipeline.clear_insights("a")

        assert (await pipeline.status("a")).status == AnalysisStatus.UNANALYZED
        assert await pipeline.get_insights("a") == []
        assert pipeline.store.count_for_item("a") == 0

        response = await pipeline.analyze_item(item)
        assert not response.from_cache
        assert transport.called_ids() == ["a", "a"]

    @pytest.mark.asyncio
    async def test_completed_item_answered_from_cache(self, pipeline, transport):
        """Test re-analysis without force reuses the cached result."""
        item = make_item("a")
        await pipeline.analyze_item(item)

        response = await pipeline.analyze_item(item)

        assert response.from_cache
        assert transport.called_ids() == ["a"]

    @pytest.mark.asyncio
    async def test_item_view_is_cached(self, pipeline):
        """Test get_insights reads through the view cache."""
        await pipeline.analyze_item(make_item("a"))
        await pipeline.get_insights("a")

        assert await pipeline.cache.get(item_insights_key("a")) is not None


class TestStatusAndReporting:
    """Tests for rate_limit_status and statistics."""

    @pytest.mark.asyncio
    async def test_rate_limit_status_is_cached(self, pipeline, quota_service):
        """Test the quota reading is reused until refreshed."""
        first = await pipeline.rate_limit_status()
        await pipeline.rate_limit_status()
        assert quota_service.fetch_calls == 1

        await pipeline.rate_limit_status(refresh=True)
        assert quota_service.fetch_calls == 2
        assert first.allowed is True
        assert pipeline.store.rate_limit_info is not None

    @pytest.mark.asyncio
    async def test_rate_limit_status_uncached_with_zero_freshness(self, pipeline, quota_service):
        """Test a zero freshness window re-queries the quota every time."""
        pipeline.config.limiter_freshness_seconds = 0

        await pipeline.rate_limit_status()
        quota_service.hourly_count = 100
        info = await pipeline.rate_limit_status()

        assert quota_service.fetch_calls == 2
        assert info.allowed is False

    @pytest.mark.asyncio
    async def test_statistics(self, pipeline, transport):
        """Test statistics combine repository totals with component stats."""
        transport.outcomes["b"] = MalformedResponseError("bad")
        await pipeline.analyze_many([make_item("a"), make_item("b")])

        stats = await pipeline.statistics()

        assert stats["by_status"] == {"completed": 1, "failed": 1}
        assert stats["client"]["calls"] == 2
        assert "hit_rate" in stats["cache"]
        assert stats["deduplicator"]["in_flight"] == 0
        assert stats["limiter"]["checks"] >= 1


class TestFromConfig:
    """Tests for InsightPipeline.from_config."""

    def test_invalid_config_raises(self, insight_config):
        config = dataclasses.replace(insight_config, analysis_url="")

        with pytest.raises(ValueError, match="INSIGHTS_ANALYSIS_URL"):
            InsightPipeline.from_config(config)

    @pytest.mark.asyncio
    async def test_builds_local_quota_pipeline(self, insight_config):
        """Test a configured pipeline initializes and closes its resources."""
        config: InsightConfig = dataclasses.replace(insight_config, quota_backend="local")

        async with InsightPipeline.from_config(config) as pipeline:
            info = await pipeline.rate_limit_status()

        assert info.allowed is True
        assert info.hourly_limit == config.hourly_limit
        assert pipeline._closables == []
