"""Cooperative cancellation signal threaded through a single request."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """
    Caller-owned cancellation signal.

    cancel() may be called from any task on the same event loop; the router
    races provider calls and backoff sleeps against wait().
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; return True if cancelled meanwhile."""
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
