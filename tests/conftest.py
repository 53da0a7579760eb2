"""
Pytest configuration and shared fixtures.

Everything runs against the in-memory ledger and a SimClock; no test touches
the network or sleeps for real.
"""
import hashlib

import pytest
import structlog

from session_agent.domain.models import STRATEGY_ALL, PositionSnapshot
from session_agent.orchestration.orchestrator import DelegationOrchestrator
from session_agent.orchestration.poller import ReconciliationPoller
from session_agent.orchestration.progress_bus import ProgressBus
from session_agent.simulation.ledger_sim import InMemoryLedger
from session_agent.simulation.sim_clock import SimClock
from session_agent.simulation.sim_oracle import StaticPositionOracle


def principal(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


SESSION = "session-1"
MONITOR = "monitor-1"
OWNER = principal("owner")
DEVICE_KEY = principal("device")
MAX_EXPOSURE = 1_000_000


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _clear_log_context():
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def clock():
    return SimClock()


@pytest.fixture
def sim(clock):
    """Ledger with one durable session (all strategies, 1M cap) and its monitor record."""
    ledger = InMemoryLedger(clock=clock, return_after_reads=1)
    ledger.create_session(
        SESSION,
        owner=OWNER,
        device_key=DEVICE_KEY,
        ttl_seconds=3600,
        max_exposure=MAX_EXPOSURE,
        strategy_mask=STRATEGY_ALL,
    )
    ledger.register_monitor(MONITOR, session=SESSION, range_low=8380, range_high=8420)
    return ledger


@pytest.fixture
def snapshot():
    return PositionSnapshot(range_low=8380, range_high=8420, market_pointer=8400, fee_x=10, fee_y=20)


@pytest.fixture
def oracle(snapshot):
    return StaticPositionOracle(snapshot)


@pytest.fixture
def step_bus():
    return ProgressBus("action_steps")


@pytest.fixture
def steps(step_bus):
    """Every step published on `step_bus`, in order."""
    collected = []
    step_bus.add_listener(collected.append)
    return collected


@pytest.fixture
def make_orchestrator(sim, clock, oracle, step_bus):
    """Factory for an orchestrator over the simulator; keyword overrides pass through."""

    def _make(*, max_attempts=12, interval_seconds=5.0, action_amount=100_000, **overrides):
        poller = ReconciliationPoller(
            sim.durable,
            SESSION,
            sim.delegation_program_id,
            interval_seconds=interval_seconds,
            max_attempts=max_attempts,
            sleep=clock.sleep,
        )
        kwargs = dict(
            oracle=oracle,
            ledger=sim.durable,
            context=sim.context,
            bus=step_bus,
            poller=poller,
            session_address=SESSION,
            monitor_address=MONITOR,
            device_key=DEVICE_KEY,
            delegation_program_id=sim.delegation_program_id,
            settle_delay_seconds=3.0,
            action_amount=action_amount,
            sleep=clock.sleep,
        )
        kwargs.update(overrides)
        return DelegationOrchestrator(**kwargs)

    return _make
