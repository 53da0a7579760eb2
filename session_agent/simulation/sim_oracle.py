"""Position oracles for paper mode and tests."""
from typing import Iterable, List, Optional, Union

from session_agent.domain.models import PositionSnapshot
from session_agent.exceptions import AgentError, PositionNotFoundError


class StaticPositionOracle:
    """Always returns the same snapshot (or raises the configured error)."""

    def __init__(self, snapshot: Optional[PositionSnapshot] = None, error: Optional[AgentError] = None):
        self.snapshot = snapshot
        self.error = error
        self.reads = 0

    async def read_position(self) -> PositionSnapshot:
        self.reads += 1
        if self.error is not None:
            raise self.error
        if self.snapshot is None:
            raise PositionNotFoundError("No position configured")
        return self.snapshot


class ScriptedPositionOracle:
    """Plays back a script of snapshots and errors; the last entry repeats."""

    def __init__(self, script: Iterable[Union[PositionSnapshot, AgentError]]):
        self._script: List[Union[PositionSnapshot, AgentError]] = list(script)
        if not self._script:
            raise ValueError("ScriptedPositionOracle needs at least one entry")
        self.reads = 0

    async def read_position(self) -> PositionSnapshot:
        entry = self._script[min(self.reads, len(self._script) - 1)]
        self.reads += 1
        if isinstance(entry, AgentError):
            raise entry
        return entry
