"""
Bounded sleep-then-check polling.

Replaces hand-written sleep/retry loops: the caller supplies an interval, a
maximum attempt count and an async predicate; the result reports whether the
predicate was satisfied or the budget was exhausted. Exhaustion is a normal
outcome and never raises.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)


class PollOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    attempts: int
    waited_seconds: float
    value: Any = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == PollOutcome.SUCCEEDED


async def poll_until(
    check: Callable[[], Awaitable[Tuple[bool, Any]]],
    *,
    interval_seconds: float,
    max_attempts: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    tolerate: Tuple[Type[BaseException], ...] = (),
    label: str = "poll",
) -> PollResult:
    """
    Sleep one interval, then run `check`; repeat up to `max_attempts` times.

    Args:
        check: Async callable returning (done, value).
        interval_seconds: Sleep before every check.
        max_attempts: Number of checks before giving up.
        sleep: Sleep implementation (asyncio.sleep, or SimClock.sleep in tests).
        tolerate: Exception types that count as "not yet" instead of propagating.
        label: Name used in log lines.

    Returns:
        PollResult with SUCCEEDED and the check's value, or EXHAUSTED with the
        last value seen.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if interval_seconds < 0:
        raise ValueError("interval_seconds must be >= 0")

    waited = 0.0
    last_value: Optional[Any] = None
    for attempt in range(1, max_attempts + 1):
        await sleep(interval_seconds)
        waited += interval_seconds
        try:
            done, last_value = await check()
        except tolerate as e:
            logger.warning(
                f"{label} check failed, treating as not ready",
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(e),
            )
            continue
        if done:
            return PollResult(PollOutcome.SUCCEEDED, attempt, waited, last_value)
        logger.info(f"{label} not ready", attempt=attempt, max_attempts=max_attempts, waited_seconds=waited)

    return PollResult(PollOutcome.EXHAUSTED, max_attempts, waited, last_value)
