"""
PeriodicMonitor: fixed-interval position checkpointing.

Each tick reads the position, then resolves where the Session record lives.
While it is delegated (EPHEMERAL) the durable ledger must not be written, so
the tick only records what it saw. Once the record is back (DURABLE) the
snapshot is checkpointed directly and the receipt verified.

Every tick, whatever its outcome, appends one line to the memory log and
publishes a TickEvent. A failing tick never stops the loop.

Deferral follow-up: consecutive deferred ticks are counted. The first
successful write after a streak logs CHECKPOINT_DEFERRAL_RESOLVED; a streak of
`deferral_alert_ticks` or more marks each further deferred tick with an error
and logs CHECKPOINT_DEFERRAL_STALLED.
"""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from session_agent.constants import DEFAULT_CHECK_INTERVAL_SECONDS
from session_agent.domain.events import TickEvent
from session_agent.domain.models import DelegationLocation, PositionSnapshot
from session_agent.domain.protocols import LedgerEndpoint, PositionOracle
from session_agent.exceptions import AgentError
from session_agent.ledger import instructions
from session_agent.ledger.explorer import ExplorerLinks
from session_agent.ledger.location import resolve_location
from session_agent.ledger.receipts import submit_and_verify
from session_agent.monitoring.logger import bind_log_context, clear_log_context, get_logger
from session_agent.monitoring.memory import MemoryLog
from session_agent.orchestration.progress_bus import ProgressBus

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicMonitor:
    """Reads the position every interval and checkpoints it when allowed."""

    def __init__(
        self,
        *,
        oracle: PositionOracle,
        ledger: LedgerEndpoint,
        bus: ProgressBus[TickEvent],
        memory: MemoryLog,
        session_address: str,
        monitor_address: str,
        device_key: str,
        delegation_program_id: str,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        deferral_alert_ticks: int = 10,
        links: Optional[ExplorerLinks] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.oracle = oracle
        self.ledger = ledger
        self.bus = bus
        self.memory = memory
        self.session_address = session_address
        self.monitor_address = monitor_address
        self.device_key = device_key
        self.delegation_program_id = delegation_program_id
        self.interval_seconds = interval_seconds
        self.deferral_alert_ticks = deferral_alert_ticks
        self.links = links or ExplorerLinks()
        self._sleep = sleep
        self._now = now

        self.tick_count = 0
        self.deferral_streak = 0
        self.last_event: Optional[TickEvent] = None

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick immediately, then every interval. Runs until cancelled (or `max_ticks`)."""
        logger.info("MONITOR_START", interval_seconds=self.interval_seconds, session=self.session_address)
        ticks = 0
        try:
            while max_ticks is None or ticks < max_ticks:
                try:
                    await self.tick()
                except Exception as e:
                    logger.exception("Monitor tick crashed", error=str(e))
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                await self._sleep(self.interval_seconds)
        finally:
            logger.info("MONITOR_STOP", ticks=self.tick_count)

    async def tick(self) -> TickEvent:
        self.tick_count += 1
        number = self.tick_count
        bind_log_context(tick=number)

        snapshot: Optional[PositionSnapshot] = None
        reference: Optional[str] = None
        deferred = False
        error: Optional[str] = None
        try:
            snapshot = await self.oracle.read_position()
            location = await resolve_location(self.ledger, self.session_address, self.delegation_program_id)

            if location == DelegationLocation.EPHEMERAL:
                deferred = True
                self.deferral_streak += 1
                logger.info("CHECKPOINT_DEFERRED", streak=self.deferral_streak)
                summary = (
                    f"Tick #{number}: {snapshot.describe()} · session delegated to execution context, "
                    "checkpoint skipped"
                )
                if self.deferral_streak >= self.deferral_alert_ticks:
                    error = f"Ownership return pending for {self.deferral_streak} consecutive ticks"
                    logger.error("CHECKPOINT_DEFERRAL_STALLED", streak=self.deferral_streak)
                    summary += f" · {error}"
            else:
                reference = await submit_and_verify(
                    self.ledger,
                    instructions.update_status(
                        snapshot,
                        device_key=self.device_key,
                        session=self.session_address,
                        monitor=self.monitor_address,
                    ),
                )
                logger.info("CHECKPOINT_WRITTEN", signature=reference, market_pointer=snapshot.market_pointer)
                summary = f"Tick #{number}: {snapshot.describe()} · checkpointed {reference[:8]}…"
                if self.deferral_streak:
                    logger.info("CHECKPOINT_DEFERRAL_RESOLVED", streak=self.deferral_streak)
                    summary += f" · reconciled after {self.deferral_streak} deferred ticks"
                    self.deferral_streak = 0
        except AgentError as e:
            error = str(e)
            logger.error("TICK_FAILED", error=error, error_type=type(e).__name__, error_category=e.category)
            summary = self._error_summary(number, snapshot, f"{e.category}: {e}")
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception("TICK_UNEXPECTED_ERROR", error=str(e))
            summary = self._error_summary(number, snapshot, error)
        finally:
            clear_log_context("tick")

        timestamp = self._now()
        await self._remember(summary, timestamp)

        event = TickEvent(
            tick_number=number,
            timestamp=timestamp,
            snapshot=snapshot,
            reference=reference,
            reference_url=self.links.durable(reference),
            deferred=deferred,
            summary=summary,
            error=error,
        )
        self.last_event = event
        self.bus.publish(event)
        return event

    @staticmethod
    def _error_summary(number: int, snapshot: Optional[PositionSnapshot], error: str) -> str:
        seen = snapshot.describe() if snapshot else "position unavailable"
        return f"Tick #{number}: {seen} · ERROR {error}"

    async def _remember(self, summary: str, timestamp: datetime) -> None:
        try:
            await asyncio.to_thread(self.memory.append, summary, timestamp)
        except OSError as e:
            logger.error("MEMORY_WRITE_FAILED", path=str(self.memory.path), error=str(e))
