"""
AgentRuntime: wires the agent together and runs it.

Live mode talks to the configured JSON-RPC gateways and position oracle.
Paper mode swaps in the in-memory ledger and a static oracle with a demo
session, so the whole workflow can be exercised without any network.

    runtime = AgentRuntime.from_config(config, paper=True)
    await runtime.run()          # push server + monitor until SIGINT/SIGTERM
"""
import asyncio
import hashlib
import signal
from dataclasses import dataclass
from typing import Any, Dict, Optional

from session_agent.config.config import Config, load_device_secret
from session_agent.domain.events import ConnectedEvent, TickEvent
from session_agent.domain.models import STRATEGY_ALL, PositionSnapshot, Step
from session_agent.domain.protocols import LedgerEndpoint, PositionOracle
from session_agent.ledger.explorer import ExplorerLinks
from session_agent.ledger.location import fetch_session, resolve_location
from session_agent.ledger.oracle import HttpPositionOracle
from session_agent.ledger.rpc_client import LedgerRpcClient
from session_agent.monitoring.logger import get_logger
from session_agent.monitoring.memory import MemoryLog
from session_agent.orchestration.dispatcher import ActionDispatcher
from session_agent.orchestration.monitor import PeriodicMonitor
from session_agent.orchestration.orchestrator import DelegationOrchestrator
from session_agent.orchestration.poller import ReconciliationPoller
from session_agent.orchestration.progress_bus import ProgressBus
from session_agent.server.ws_server import PushServer
from session_agent.simulation.ledger_sim import InMemoryLedger
from session_agent.simulation.sim_oracle import StaticPositionOracle

logger = get_logger(__name__)

PAPER_SESSION_TTL_SECONDS = 24 * 3600
PAPER_MAX_EXPOSURE = 1_000_000_000
PAPER_SNAPSHOT = dict(range_low=8380, range_high=8420, market_pointer=8400, fee_x=1200, fee_y=3400)


def paper_principal(label: str) -> str:
    """Deterministic 32-byte hex principal for paper-mode identities."""
    return hashlib.sha256(label.encode("utf-8")).hexdigest()


@dataclass
class Endpoints:
    ledger: LedgerEndpoint
    context: LedgerEndpoint
    oracle: PositionOracle
    session_address: str
    monitor_address: str
    device_key: str
    simulator: Optional[InMemoryLedger] = None


def build_live_endpoints(config: Config) -> Endpoints:
    config.validate_for_live()
    s = config.session
    secret = s.device_secret or load_device_secret(s.device_key_file)

    def client(name: str, url: str) -> LedgerRpcClient:
        return LedgerRpcClient(
            name,
            url,
            device_key=s.device_key,
            device_secret=secret,
            commitment=config.ledger.commitment,
            request_timeout_seconds=config.ledger.request_timeout_seconds,
            confirm_timeout_seconds=config.ledger.confirm_timeout_seconds,
            confirm_poll_interval_seconds=config.ledger.confirm_poll_interval_seconds,
        )

    return Endpoints(
        ledger=client("durable", config.ledger.durable_rpc_url),
        context=client("execution", config.ledger.execution_rpc_url),
        oracle=HttpPositionOracle(s.oracle_url, s.instrument, s.position, timeout_seconds=s.oracle_timeout_seconds),
        session_address=s.session_address,
        monitor_address=s.monitor_address,
        device_key=s.device_key,
    )


def build_paper_endpoints(config: Config) -> Endpoints:
    s = config.session
    session_address = s.session_address or "paper-session"
    monitor_address = s.monitor_address or "paper-monitor"
    device_key = paper_principal(s.device_key or "paper-device")

    sim = InMemoryLedger(
        program_id=config.ledger.program_id,
        delegation_program_id=config.ledger.delegation_program_id,
        return_after_reads=2,
    )
    sim.create_session(
        session_address,
        owner=paper_principal("paper-owner"),
        device_key=device_key,
        ttl_seconds=PAPER_SESSION_TTL_SECONDS,
        max_exposure=PAPER_MAX_EXPOSURE,
        strategy_mask=STRATEGY_ALL,
    )
    sim.register_monitor(
        monitor_address,
        session=session_address,
        range_low=PAPER_SNAPSHOT["range_low"],
        range_high=PAPER_SNAPSHOT["range_high"],
    )
    logger.info("Paper mode: in-memory ledger ready", session=session_address, monitor=monitor_address)
    return Endpoints(
        ledger=sim.durable,
        context=sim.context,
        oracle=StaticPositionOracle(PositionSnapshot(**PAPER_SNAPSHOT)),
        session_address=session_address,
        monitor_address=monitor_address,
        device_key=device_key,
        simulator=sim,
    )


class AgentRuntime:
    """Owns every long-lived component of one agent process."""

    def __init__(self, config: Config, endpoints: Endpoints, *, paper: bool = False):
        self.config = config
        self.endpoints = endpoints
        self.paper = paper
        self.links = ExplorerLinks(config.ledger.durable_explorer_url, config.ledger.execution_explorer_url)

        self.step_bus: ProgressBus[Step] = ProgressBus("action_steps")
        self.tick_bus: ProgressBus[TickEvent] = ProgressBus("monitor_ticks")

        delegation_program_id = config.ledger.delegation_program_id
        self.poller = ReconciliationPoller(
            endpoints.ledger,
            endpoints.session_address,
            delegation_program_id,
            interval_seconds=config.orchestrator.poll_interval_seconds,
            max_attempts=config.orchestrator.max_poll_attempts,
        )
        self.orchestrator = DelegationOrchestrator(
            oracle=endpoints.oracle,
            ledger=endpoints.ledger,
            context=endpoints.context,
            bus=self.step_bus,
            poller=self.poller,
            session_address=endpoints.session_address,
            monitor_address=endpoints.monitor_address,
            device_key=endpoints.device_key,
            delegation_program_id=delegation_program_id,
            settle_delay_seconds=config.orchestrator.settle_delay_seconds,
            action_amount=config.orchestrator.action_amount,
            links=self.links,
        )
        self.dispatcher = ActionDispatcher(self.orchestrator)
        self.monitor = PeriodicMonitor(
            oracle=endpoints.oracle,
            ledger=endpoints.ledger,
            bus=self.tick_bus,
            memory=MemoryLog(config.monitor.memory_path, config.monitor.memory_tail_lines),
            session_address=endpoints.session_address,
            monitor_address=endpoints.monitor_address,
            device_key=endpoints.device_key,
            delegation_program_id=delegation_program_id,
            interval_seconds=config.monitor.check_interval_seconds,
            deferral_alert_ticks=config.monitor.deferral_alert_ticks,
            links=self.links,
        )
        self.server: Optional[PushServer] = None
        if config.server.enabled:
            self.server = PushServer(
                dispatcher=self.dispatcher,
                step_bus=self.step_bus,
                tick_bus=self.tick_bus,
                greeting=ConnectedEvent(
                    session_address=endpoints.session_address,
                    monitor_address=endpoints.monitor_address,
                    instrument=config.session.instrument or "",
                    position=config.session.position or "",
                    interval_seconds=config.monitor.check_interval_seconds,
                ),
                last_tick=lambda: self.monitor.last_event,
                host=config.server.host,
                port=config.server.port,
                secret=config.server.secret,
                auth_timeout_seconds=config.server.auth_timeout_seconds,
                max_payload_bytes=config.server.max_payload_bytes,
                min_trigger_interval_seconds=config.server.min_trigger_interval_seconds,
            )

        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: Config, *, paper: bool = False) -> "AgentRuntime":
        endpoints = build_paper_endpoints(config) if paper else build_live_endpoints(config)
        return cls(config, endpoints, paper=paper)

    def request_stop(self) -> None:
        logger.info("Shutdown signal received")
        self._stop_event.set()

    async def run(self) -> None:
        logger.info(
            "AGENT_START",
            mode="paper" if self.paper else "live",
            environment=self.config.environment,
            session=self.endpoints.session_address,
        )
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        if self.server is not None:
            await self.server.start()
        monitor_task = asyncio.create_task(self.monitor.run(), name="periodic_monitor")

        try:
            await self._stop_event.wait()
        finally:
            monitor_task.cancel()
            await asyncio.gather(monitor_task, return_exceptions=True)
            if self.dispatcher.inflight is not None and not self.dispatcher.inflight.done():
                logger.info("Waiting for in-flight workflow to finish")
                await asyncio.gather(self.dispatcher.drain(), return_exceptions=True)
            if self.server is not None:
                await self.server.stop()
            self.step_bus.close_all()
            self.tick_bus.close_all()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            logger.info("AGENT_STOPPED", ticks=self.monitor.tick_count)

    async def status(self) -> Dict[str, Any]:
        """Delegation location, exposure usage and the recent memory log of the configured session."""
        ledger = self.endpoints.ledger
        address = self.endpoints.session_address
        location = await resolve_location(ledger, address, self.config.ledger.delegation_program_id)
        session = await fetch_session(ledger, address)
        return {
            "session_address": address,
            "location": location.value,
            "active": session.active,
            "expired": session.is_expired(),
            "expires_at": session.expires_at.isoformat(),
            "spent_exposure": session.spent_exposure,
            "max_exposure": session.max_exposure,
            "exposure_used_pct": round(session.exposure_used_pct, 2),
            "action_count": session.action_count,
            "strategy_mask": session.strategy_mask,
            "memory_tail": await asyncio.to_thread(self.monitor.memory.tail),
        }
