"""
ProgressBus: in-process fan-out of workflow steps and monitor ticks.

The producer calls `publish(item)`; every live subscription and listener
receives the item in publish order. Delivery is best-effort: a listener that
raises or a subscription whose queue is full is logged and skipped, and never
interrupts delivery to the others or the producer. Late subscribers receive
only items published after they subscribe.
"""
import asyncio
from typing import Any, Callable, Generic, List, TypeVar

from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_CLOSED: Any = object()


class Subscription(Generic[T]):
    """A consumer's view of the bus; iterate with `async for`."""

    def __init__(self, bus: "ProgressBus[T]", maxsize: int = 0):
        self._bus = bus
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def _offer(self, item: T) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Subscriber queue full, dropping item", bus=self._bus.name, dropped=self.dropped)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> T:
        item = self._queue.get_nowait()
        if item is _CLOSED:
            raise asyncio.QueueEmpty
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._remove(self)
        try:
            # wake a consumer blocked in __anext__
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # nobody can be blocked on a full queue; __anext__ stops once it drains
            pass

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ProgressBus(Generic[T]):
    """Publish/subscribe channel for step and tick events."""

    def __init__(self, name: str = "progress"):
        self.name = name
        self._subscriptions: List[Subscription[T]] = []
        self._listeners: List[Callable[[T], None]] = []
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def subscribe(self, maxsize: int = 0) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, maxsize=maxsize)
        self._subscriptions.append(sub)
        return sub

    def add_listener(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a synchronous callback; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _remove(self, sub: Subscription[T]) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, item: T) -> None:
        self.published += 1
        for sub in list(self._subscriptions):
            sub._offer(item)
        for listener in list(self._listeners):
            try:
                listener(item)
            except Exception as e:
                logger.warning(
                    "Progress listener failed",
                    bus=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def close_all(self) -> None:
        for sub in list(self._subscriptions):
            sub.close()
        self._listeners.clear()
