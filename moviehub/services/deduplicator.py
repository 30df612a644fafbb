"""
RequestDeduplicator - Single-flight provider calls keyed by request signature.

Concurrent callers asking for the same signature share one PendingCall. The
call's outcome, value or exception alike, is delivered to every caller, and
the pending entry is dropped as soon as the call settles so the next request
starts fresh.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class DeduplicatorStats:
    """Counters for /health."""

    total: int = 0  # Calls actually issued
    deduplicated: int = 0  # Callers that joined an issued call
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        requested = self.total + self.deduplicated
        return self.deduplicated / requested if requested else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }


@dataclass
class PendingCall(Generic[T]):
    """An issued provider call and how many callers are waiting on it."""

    signature: str
    task: "asyncio.Task[T]"
    waiters: int = 1


class RequestDeduplicator:
    """
    Collapses concurrent identical calls into one.

    Usage:
        dedup = RequestDeduplicator()
        data = await dedup.dedupe(signature, lambda: fetch(path, params))
    """

    def __init__(self, debug: bool = False):
        self._pending: dict[str, PendingCall[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Join the pending call for key, or issue request_fn as a new one.

        A caller that is cancelled stops waiting; the shared call keeps
        running for the others.
        """
        async with self._lock:
            pending = self._pending.get(key)
            if pending is None:
                task = asyncio.create_task(self._settle(key, request_fn))
                pending = self._pending[key] = PendingCall(key, task)
                self._stats.total += 1
                self._trace(f"issue {key[:80]}")
            else:
                pending.waiters += 1
                self._stats.deduplicated += 1
                self._trace(f"join {key[:80]} ({pending.waiters} waiting)")

        return await asyncio.shield(pending.task)

    async def _settle(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        finally:
            async with self._lock:
                settled = self._pending.pop(key, None)
            if settled is not None:
                self._trace(f"settled {key[:80]} for {settled.waiters} caller(s)")

    async def cancel_all(self) -> int:
        """Cancel every pending call, e.g. on shutdown."""
        async with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()

        for call in pending:
            call.task.cancel()
        if pending:
            logger.info(f"Cancelled {len(pending)} pending provider calls")
        return len(pending)

    def get_in_flight_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> DeduplicatorStats:
        self._stats.in_flight = len(self._pending)
        return self._stats

    def _trace(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")
