"""
ConcurrencyGate: at most one action workflow in flight per process.

Usage:
    gate = ConcurrencyGate()

    # Fire-and-forget: acquire, start the task, release when it finishes
    task = gate.spawn(lambda: orchestrator.run(category))
    if task is None:
        return  # workflow already running; drop the trigger

    # Or scoped
    with gate.slot() as acquired:
        if acquired:
            await orchestrator.run(category)

try_acquire() never blocks and never queues. Release always happens in the
completion path, including on error or cancellation, so a crashed workflow
cannot leak the lock. Single-process exclusion only.
"""
import asyncio
import threading
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional

from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)


class ConcurrencyGate:
    """Non-blocking, single-slot exclusive lock for action workflows."""

    def __init__(self, name: str = "action_workflow"):
        self.name = name
        self._lock = threading.Lock()
        self._acquired_count = 0
        self._rejected_count = 0

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def stats(self) -> dict:
        return {
            "held": self.held,
            "acquired": self._acquired_count,
            "rejected": self._rejected_count,
        }

    def try_acquire(self) -> bool:
        if not self._lock.acquire(blocking=False):
            self._rejected_count += 1
            logger.info("GATE_REJECTED", gate=self.name, rejected_total=self._rejected_count)
            return False
        self._acquired_count += 1
        logger.debug("Gate acquired", gate=self.name)
        return True

    def release(self) -> None:
        if not self._lock.locked():
            raise RuntimeError(f"Gate {self.name} released while not held")
        self._lock.release()
        logger.debug("Gate released", gate=self.name)

    @contextmanager
    def slot(self) -> Iterator[bool]:
        """Scoped acquisition; yields whether the slot was obtained."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def spawn(
        self,
        factory: Callable[[], Awaitable[Any]],
        *,
        name: Optional[str] = None,
    ) -> Optional["asyncio.Task[Any]"]:
        """Acquire and run `factory()` as a task; None if the gate is held.

        The gate is released from the task's done-callback whatever the
        outcome. Must be called from inside a running event loop.
        """
        if not self.try_acquire():
            return None
        try:
            task = asyncio.ensure_future(factory())
        except BaseException:
            self.release()
            raise
        if name and hasattr(task, "set_name"):
            task.set_name(name)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: "asyncio.Task[Any]") -> None:
        self.release()
        if task.cancelled():
            logger.warning("Gated task cancelled", gate=self.name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Gated task raised", gate=self.name, error=str(exc), error_type=type(exc).__name__)
