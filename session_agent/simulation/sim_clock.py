"""
SimClock: deterministic time for the simulator and tests.

Stands in for `asyncio.sleep` and wall-clock reads in the orchestrator,
poller, monitor and in-memory ledger. A sleep advances simulated time by the requested amount
and returns after yielding once to the event loop, so a 60 s reconciliation
budget elapses instantly while still letting other tasks run.

    clock = SimClock()
    poller = ReconciliationPoller(..., sleep=clock.sleep)
    await poller.wait_for_return()
    clock.elapsed_seconds   # 60.0
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

DEFAULT_START = datetime(2025, 1, 1, tzinfo=timezone.utc)


class SimClock:
    """Simulated clock. Single event loop, no threads."""

    def __init__(self, start: Optional[datetime] = None, *, auto_advance: bool = True):
        """
        Args:
            start: Initial simulated time (timezone-aware). Defaults to 2025-01-01 UTC.
            auto_advance: Advance simulated time on every sleep.
        """
        start = start or DEFAULT_START
        if start.tzinfo is None:
            raise ValueError("SimClock start must be timezone-aware")
        self._start = start
        self._current = start
        self.auto_advance = auto_advance
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._current

    def time(self) -> float:
        return self._current.timestamp()

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Cannot advance by negative delta")
        self._current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        """Drop-in for asyncio.sleep()."""
        self.sleeps.append(seconds)
        if self.auto_advance:
            self.advance(seconds)
        await asyncio.sleep(0)

    @property
    def elapsed_seconds(self) -> float:
        return (self._current - self._start).total_seconds()

    @property
    def stats(self) -> dict:
        return {
            "start": self._start.isoformat(),
            "current": self._current.isoformat(),
            "elapsed_seconds": self.elapsed_seconds,
            "total_sleeps": len(self.sleeps),
            "total_sleep_seconds": sum(self.sleeps),
        }

    def __repr__(self) -> str:
        return f"SimClock(now={self._current.isoformat()}, elapsed={self.elapsed_seconds}s)"
