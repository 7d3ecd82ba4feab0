"""
Latency profiling and logging setup.

Provides simple decorators to measure latency per operation.
"""

import functools
import logging
import sys
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def profile_latency(phase_name: str = "operation"):
    """
    Decorator to profile latency of a coroutine function.

    Usage:
        @profile_latency("analyze_many")
        async def analyze_many(...):
            ...

    Logs: "[LATENCY] analyze_many: 45.3ms"
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.info(f"[LATENCY] {phase_name}: {elapsed_ms:.1f}ms")
        return async_wrapper
    return decorator


class LatencyTracker:
    """
    Context manager to track latency for a code block.

    Usage:
        with LatencyTracker("tool:analyze_items"):
            ...
    """
    def __init__(self, phase_name: str = "operation"):
        self.phase_name = phase_name
        self.start_time = None
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        logger.info(f"[LATENCY] {self.phase_name}: {self.elapsed_ms:.1f}ms")


def configure_logging(log_level=logging.INFO):
    """Send log output to stderr; stdout carries the MCP protocol."""
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
