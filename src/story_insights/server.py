#!/usr/bin/env python3
"""
Story Insights MCP Server

Coordinates on-demand AI analysis of story content (character sheets, plot
notes, research, chapters) behind a hard hourly/daily quota.

- Duplicate in-flight analyses are coalesced
- Batches are paced and survive partial failure
- Results are cached in memory and in a session-scoped SQLite tier

Tools provided:
- analyze_items: Analyze many content items in paced batches
- analyze_item: Analyze one content item
- retry_analysis: Re-analyze an item whose last attempt failed
- check_rate_limit: Current quota usage and reset time
- get_insights: Visible insights for an item
- dismiss_insight: Hide one insight
- clear_insights: Remove all insights for an item
- analysis_status: Status of one item, or items still needing analysis
- analysis_statistics: Aggregate analysis statistics
"""

import asyncio
import logging
import signal
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
)

from .config import get_config, InsightConfig, ServerConfig
from .handlers import (
    handle_analyze_items,
    handle_analyze_item,
    handle_retry_analysis,
    handle_check_rate_limit,
    handle_get_insights,
    handle_dismiss_insight,
    handle_clear_insights,
    handle_analysis_status,
    handle_analysis_statistics,
)
from .pipeline import InsightPipeline
from .profiling import LatencyTracker, configure_logging

logger = logging.getLogger(__name__)


# Global instances
_insight_config: InsightConfig | None = None
_server_config: ServerConfig | None = None
_pipeline: InsightPipeline | None = None

# Shutdown flag for graceful termination
_shutdown_event: asyncio.Event | None = None


_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "description": "Content item identifier"},
        "content": {"type": "string", "description": "Text to analyze; blank content is skipped"},
        "kind": {
            "type": "string",
            "enum": ["character", "plot", "research", "chapter"],
            "description": "Analysis kind",
        },
        "title": {"type": "string", "description": "Optional display title"},
    },
    "required": ["id", "content", "kind"],
}


async def get_pipeline() -> InsightPipeline:
    """Get or create the singleton pipeline."""
    global _insight_config, _server_config, _pipeline

    if _pipeline is None:
        _insight_config, _server_config = get_config()
        pipeline = InsightPipeline.from_config(_insight_config)
        await pipeline.initialize()
        _pipeline = pipeline

    return _pipeline


def get_server_config() -> ServerConfig:
    global _server_config
    if _server_config is None:
        _, _server_config = get_config()
    return _server_config


async def cleanup_resources() -> None:
    """Cleanup resources on shutdown."""
    global _pipeline

    if _pipeline is not None:
        try:
            await _pipeline.close()
        except Exception as e:
            logger.error(f"Error closing pipeline: {e}")
        _pipeline = None


def list_tool_definitions() -> list[Tool]:
    """Tool definitions exposed by the server."""
    return [
        Tool(
            name="analyze_items",
            description=(
                "Analyze several story content items. Items run in batches of 3 with a pause "
                "between batches; blank items are skipped. Returns one result per item in order."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "items": {"type": "array", "items": _ITEM_SCHEMA},
                    "force": {
                        "type": "boolean",
                        "description": "Re-analyze items whose cached insights are still fresh",
                        "default": False,
                    },
                },
                "required": ["items"],
            },
        ),
        Tool(
            name="analyze_item",
            description="Analyze a single story content item.",
            inputSchema={
                **_ITEM_SCHEMA,
                "properties": {
                    **_ITEM_SCHEMA["properties"],
                    "force": {"type": "boolean", "default": False},
                },
            },
        ),
        Tool(
            name="retry_analysis",
            description="Re-analyze an item whose last analysis failed.",
            inputSchema={
                "type": "object",
                "properties": {"item_id": {"type": "string"}},
                "required": ["item_id"],
            },
        ),
        Tool(
            name="check_rate_limit",
            description="Show hourly/daily analysis quota usage and when capacity returns.",
            inputSchema={
                "type": "object",
                "properties": {
                    "refresh": {"type": "boolean", "description": "Bypass the cached reading", "default": False},
                },
            },
        ),
        Tool(
            name="get_insights",
            description="Get the current (non-dismissed) insights for a content item.",
            inputSchema={
                "type": "object",
                "properties": {
                    "item_id": {"type": "string"},
                    "refresh": {"type": "boolean", "default": False},
                },
                "required": ["item_id"],
            },
        ),
        Tool(
            name="dismiss_insight",
            description="Dismiss one insight. Dismissing twice is harmless.",
            inputSchema={
                "type": "object",
                "properties": {
                    "item_id": {"type": "string"},
                    "insight_id": {"type": "string"},
                },
                "required": ["item_id", "insight_id"],
            },
        ),
        Tool(
            name="clear_insights",
            description="Remove all insights for a content item and mark it unanalyzed.",
            inputSchema={
                "type": "object",
                "properties": {"item_id": {"type": "string"}},
                "required": ["item_id"],
            },
        ),
        Tool(
            name="analysis_status",
            description=(
                "Analysis status of one item, or (without item_id) the items that are "
                "unanalyzed, pending or failed."
            ),
            inputSchema={
                "type": "object",
                "properties": {"item_id": {"type": "string"}},
            },
        ),
        Tool(
            name="analysis_statistics",
            description="Totals by status and kind, recent history, cache and limiter statistics.",
            inputSchema={
                "type": "object",
                "properties": {
                    "history_limit": {"type": "integer", "default": 10, "minimum": 0},
                },
            },
        ),
    ]


async def dispatch_tool(
    name: str,
    arguments: dict[str, Any],
    pipeline: InsightPipeline,
    server_config: ServerConfig,
) -> list[TextContent]:
    """Route a tool call to its handler."""
    if name == "analyze_items":
        return await handle_analyze_items(arguments, pipeline, server_config.max_items_per_call)
    elif name == "analyze_item":
        return await handle_analyze_item(arguments, pipeline)
    elif name == "retry_analysis":
        return await handle_retry_analysis(arguments, pipeline)
    elif name == "check_rate_limit":
        return await handle_check_rate_limit(arguments, pipeline)
    elif name == "get_insights":
        return await handle_get_insights(arguments, pipeline)
    elif name == "dismiss_insight":
        return await handle_dismiss_insight(arguments, pipeline)
    elif name == "clear_insights":
        return await handle_clear_insights(arguments, pipeline)
    elif name == "analysis_status":
        return await handle_analysis_status(arguments, pipeline)
    elif name == "analysis_statistics":
        return await handle_analysis_statistics(arguments, pipeline)
    return [TextContent(type="text", text=f"Unknown tool: {name}")]


def create_server() -> Server:
    """Create and configure the MCP server."""
    server_config = get_server_config()
    server = Server(server_config.name)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return list_tool_definitions()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        try:
            with LatencyTracker(f"tool:{name}"):
                pipeline = await get_pipeline()
                return await asyncio.wait_for(
                    dispatch_tool(name, arguments or {}, pipeline, server_config),
                    timeout=server_config.operation_timeout_seconds,
                )
        except asyncio.TimeoutError:
            return [TextContent(
                type="text",
                text=f"Error: {name} timed out after {server_config.operation_timeout_seconds}s",
            )]
        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]

    return server


async def run_server():
    """Run the MCP server with graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    server = create_server()

    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        _shutdown_event.set()

    # Register signal handlers (Unix only)
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    try:
        async with stdio_server() as (read_stream, write_stream):
            server_task = asyncio.create_task(
                server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                )
            )

            # Wait for either server completion or shutdown signal
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(_shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    finally:
        await cleanup_resources()


def main():
    """Main entry point."""
    configure_logging()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Server error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
