"""
Analysis Handlers for the Story Insights MCP Server.

- handle_analyze_items: Analyze a list of content items in paced batches
- handle_analyze_item: Analyze one content item
- handle_retry_analysis: Re-analyze an item whose last attempt failed
- handle_check_rate_limit: Report the current hourly/daily quota
"""

import json
from typing import Any

from mcp.types import TextContent

from ..errors import AnalysisError, RateLimitError
from ..models import ContentItem
from ..pipeline import InsightPipeline
from ..rate_limiter import describe_limit


# Input validation constants
MAX_ITEMS_PER_CALL = 200
MAX_ITEM_ID_LENGTH = 256
MAX_CONTENT_LENGTH = 1_000_000  # 1MB


def text_result(payload: Any) -> list[TextContent]:
    if isinstance(payload, str):
        return [TextContent(type="text", text=payload)]
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


def parse_item(raw: Any) -> tuple[ContentItem | None, str]:
    """
    Build a ContentItem from tool arguments.

    Returns:
        (item, error_message) tuple; item is None when invalid
    """
    if not isinstance(raw, dict):
        return None, f"item must be an object, got {type(raw).__name__}"

    item_id = raw.get("id")
    if not isinstance(item_id, str) or not item_id:
        return None, "item id is required"
    if len(item_id) > MAX_ITEM_ID_LENGTH:
        return None, f"item id too long ({len(item_id)} > {MAX_ITEM_ID_LENGTH} chars)"

    content = raw.get("content", "")
    if not isinstance(content, str):
        return None, f"content of {item_id} must be a string"
    if len(content) > MAX_CONTENT_LENGTH:
        return None, f"content of {item_id} too long ({len(content)} > {MAX_CONTENT_LENGTH} chars)"

    try:
        item = ContentItem(
            id=item_id,
            content=content,
            kind=raw.get("kind", ""),
            title=str(raw.get("title", "")),
        )
    except AnalysisError as e:
        return None, f"{item_id}: {e}"
    return item, ""


def _rate_limited(e: RateLimitError) -> list[TextContent]:
    return text_result({
        "error": str(e),
        "error_type": e.kind,
        "reset_time": e.reset_time.isoformat() if e.reset_time else None,
    })


async def handle_analyze_items(
    arguments: dict[str, Any],
    pipeline: InsightPipeline,
    max_items: int = MAX_ITEMS_PER_CALL,
) -> list[TextContent]:
    """
    Handle analyze_items tool call.

    Args:
        arguments: Tool arguments (items, force)
        pipeline: Pipeline performing the analysis
        max_items: Upper bound on items per call
    """
    raw_items = arguments.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        return text_result("Error: items must be a non-empty list")
    if len(raw_items) > max_items:
        return text_result(f"Error: too many items ({len(raw_items)} > {max_items})")

    items = []
    for raw in raw_items:
        item, error = parse_item(raw)
        if item is None:
            return text_result(f"Error: {error}")
        items.append(item)

    await pipeline.register_items(items)
    try:
        responses = await pipeline.analyze_many(items, force=bool(arguments.get("force", False)))
    except RateLimitError as e:
        return _rate_limited(e)

    completed = sum(1 for r in responses if r.success)
    return text_result({
        "summary": f"{completed}/{len(responses)} items completed",
        "results": [r.to_dict() for r in responses],
    })


async def handle_analyze_item(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle analyze_item tool call."""
    item, error = parse_item(arguments)
    if item is None:
        return text_result(f"Error: {error}")

    await pipeline.register_items([item])
    try:
        response = await pipeline.analyze_item(item, force=bool(arguments.get("force", False)))
    except RateLimitError as e:
        return _rate_limited(e)
    return text_result(response.to_dict())


async def handle_retry_analysis(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle retry_analysis tool call."""
    item_id = arguments.get("item_id")
    if not isinstance(item_id, str) or not item_id:
        return text_result("Error: item_id is required")

    try:
        response = await pipeline.retry(item_id)
    except RateLimitError as e:
        return _rate_limited(e)
    except AnalysisError as e:
        return text_result(f"Error: {e}")
    return text_result(response.to_dict())


async def handle_check_rate_limit(arguments: dict[str, Any], pipeline: InsightPipeline) -> list[TextContent]:
    """Handle check_rate_limit tool call."""
    info = await pipeline.rate_limit_status(refresh=bool(arguments.get("refresh", False)))
    payload = info.to_dict()
    payload["remaining_hourly"] = info.remaining_hourly
    payload["remaining_daily"] = info.remaining_daily
    if info.is_exhausted:
        payload["message"] = describe_limit(info)
    return text_result(payload)
