from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    """
    Cooperative cancellation shared by the dispatcher and its workers.

    Two levels: ``stop_scheduling`` keeps pending chunks from starting while
    in-flight chunks finish (fast fail); ``cancel`` additionally asks in-flight
    chunks to stop at their next await point.
    """

    def __init__(self) -> None:
        self._stop = asyncio.Event()
        self._cancelled = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def scheduling_stopped(self) -> bool:
        return self._stop.is_set()

    def stop_scheduling(self, reason: str) -> None:
        if not self._stop.is_set():
            self.reason = self.reason or reason
            self._stop.set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled.is_set():
            # An explicit cancel overrides a softer fast-fail reason.
            self.reason = reason
            self._stop.set()
            self._cancelled.set()

    async def wait(self) -> None:
        await self._cancelled.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; return True if cancelled meanwhile."""
        if delay <= 0:
            return self.is_cancelled
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
