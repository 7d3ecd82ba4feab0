"""
Request Handlers for the Story Insights MCP Server.

- analysis: analyze_items, analyze_item, retry_analysis, check_rate_limit
- insights: get_insights, dismiss_insight, clear_insights, analysis_status, analysis_statistics
"""

from .analysis import (
    handle_analyze_items,
    handle_analyze_item,
    handle_retry_analysis,
    handle_check_rate_limit,
)
from .insights import (
    handle_get_insights,
    handle_dismiss_insight,
    handle_clear_insights,
    handle_analysis_status,
    handle_analysis_statistics,
)

__all__ = [
    # Analysis handlers
    "handle_analyze_items",
    "handle_analyze_item",
    "handle_retry_analysis",
    "handle_check_rate_limit",
    # Insight handlers
    "handle_get_insights",
    "handle_dismiss_insight",
    "handle_clear_insights",
    "handle_analysis_status",
    "handle_analysis_statistics",
]
