"""
In-flight registry for analysis attempts.

At most one attempt per (item_id, kind) runs at any instant. A duplicate
submission either returns immediately without running its work, or joins the
attempt already in flight and shares its outcome.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .models import AnalysisKind, resolve_kind

logger = logging.getLogger(__name__)

InFlightKey = tuple[str, AnalysisKind]


def _consume_outcome(future: asyncio.Future) -> None:
    # Marks a failed attempt as observed when no duplicate joined it
    if not future.cancelled():
        future.exception()


class RequestDeduplicator:
    """Registry of outstanding (item_id, kind) attempts."""

    def __init__(self):
        self._in_flight: dict[InFlightKey, asyncio.Future] = {}
        self._submitted = 0
        self._duplicates = 0

    async def submit(
        self,
        item_id: str,
        kind: AnalysisKind | str,
        work_fn: Callable[[], Awaitable[Any]],
        join: bool = False,
    ) -> Any:
        """
        Run work_fn unless the same (item_id, kind) is already in flight.

        Args:
            item_id: Content item identifier
            kind: Analysis kind
            work_fn: Zero-argument coroutine function performing the attempt
            join: When a duplicate is found, await the in-flight outcome instead of returning None

        Returns:
            The work result, or None for a duplicate submitted with join=False
        """
        key = (item_id, resolve_kind(kind))

        existing = self._in_flight.get(key)
        if existing is not None:
            self._duplicates += 1
            logger.debug(f"[DEDUP] {key[0]}/{key[1].value} already in flight")
            if join:
                return await asyncio.shield(existing)
            return None

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_outcome)
        self._in_flight[key] = future
        self._submitted += 1

        try:
            result = await work_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    def is_in_flight(self, item_id: str, kind: AnalysisKind | str) -> bool:
        return (item_id, resolve_kind(kind)) in self._in_flight

    def in_flight_keys(self) -> list[InFlightKey]:
        return list(self._in_flight)

    def get_stats(self) -> dict[str, Any]:
        """Get deduplicator statistics."""
        return {
            "in_flight": len(self._in_flight),
            "submitted": self._submitted,
            "duplicates": self._duplicates,
        }
