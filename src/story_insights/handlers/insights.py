"""
Insight Handlers for the Story Insights MCP Server.

- handle_get_insights: Visible insights for one item
- handle_dismiss_insight: Hide one insight
- handle_clear_insights: Remove all insights for one item
- handle_analysis_status: Persisted analysis state of one item
- handle_analysis_statistics: Aggregate counts, history and component stats
"""

from typing import Any

from mcp.types import TextContent

from ..pipeline import InsightPipeline
from .analysis import text_result


def _require_item_id(arguments: dict[str, Any]) -> str | None:
    item_id = arguments.get("item_id")
    return item_id if isinstance(item_id, str) and item_id else None


async def handle_get_insights(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle get_insights tool call."""
    item_id = _require_item_id(arguments)
    if item_id is None:
        return text_result("Error: item_id is required")

    insights = await pipeline.get_insights(item_id, refresh=bool(arguments.get("refresh", False)))
    return text_result({"item_id": item_id, "insights": [i.to_dict() for i in insights]})


async def handle_dismiss_insight(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle dismiss_insight tool call."""
    item_id = _require_item_id(arguments)
    insight_id = arguments.get("insight_id")
    if item_id is None or not isinstance(insight_id, str) or not insight_id:
        return text_result("Error: item_id and insight_id are required")

    changed = await pipeline.dismiss_insight(item_id, insight_id)
    if changed:
        return text_result(f"Dismissed insight {insight_id}")
    return text_result(f"Insight {insight_id} already dismissed or not found")


async def handle_clear_insights(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle clear_insights tool call."""
    item_id = _require_item_id(arguments)
    if item_id is None:
        return text_result("Error: item_id is required")

    await pipeline.clear_insights(item_id)
    return text_result(f"Cleared insights for {item_id}")


async def handle_analysis_status(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle analysis_status tool call."""
    item_id = _require_item_id(arguments)
    if item_id is None:
        needing = await pipeline.items_needing_analysis()
        return text_result({
            "is_analyzing": pipeline.store.is_analyzing,
            "needs_analysis": [{"id": i.id, "title": i.title, "status": i.status.value} for i in needing],
        })

    record = await pipeline.status(item_id)
    return text_result({
        "item_id": item_id,
        "status": record.status.value,
        "error": pipeline.store.error_of(item_id),
        "insight_count": len([i for i in record.insights if not i.dismissed]),
        "last_analyzed": record.last_analyzed.isoformat() if record.last_analyzed else None,
        "analysis_count": record.analysis_count,
        "in_flight": [k.value for (i, k) in pipeline.deduplicator.in_flight_keys() if i == item_id],
    })


async def handle_analysis_statistics(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle analysis_statistics tool call."""
    limit = arguments.get("history_limit", 10)
    if not isinstance(limit, int) or limit < 0:
        return text_result("Error: history_limit must be a non-negative integer")

    stats = await pipeline.statistics()
    stats["recent"] = [
        {
            "item_id": r.item_id,
            "status": r.status.value,
            "last_analyzed": r.last_analyzed.isoformat() if r.last_analyzed else None,
            "insight_count": len(r.insights),
        }
        for r in await pipeline.history(limit)
    ]
    return text_result(stats)
