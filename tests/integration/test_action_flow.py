"""
End-to-end action flow over the in-memory ledger.

Triggers go through the dispatcher and its concurrency gate, the orchestrator
runs all five phases against both ledger surfaces, and the periodic monitor
runs alongside it.
"""
import asyncio

import pytest

from session_agent.domain.models import STRATEGY_LP, DelegationLocation, StepStatus, WorkflowState
from session_agent.ledger.location import resolve_location
from session_agent.monitoring.memory import MemoryLog
from session_agent.orchestration.dispatcher import ActionDispatcher
from session_agent.orchestration.monitor import PeriodicMonitor
from session_agent.orchestration.progress_bus import ProgressBus
from tests.conftest import DEVICE_KEY, MONITOR, SESSION


async def _until_delegated(sim, limit=100):
    for _ in range(limit):
        if sim.controller_of(SESSION) == sim.delegation_program_id:
            return
        await asyncio.sleep(0)
    raise AssertionError("session never reached the execution context")


@pytest.fixture
def monitor(sim, clock, oracle, tmp_path):
    return PeriodicMonitor(
        oracle=oracle,
        ledger=sim.durable,
        bus=ProgressBus("monitor_ticks"),
        memory=MemoryLog(tmp_path / "MEMORY.md"),
        session_address=SESSION,
        monitor_address=MONITOR,
        device_key=DEVICE_KEY,
        delegation_program_id=sim.delegation_program_id,
        sleep=clock.sleep,
        now=clock.now,
    )


@pytest.mark.asyncio
async def test_back_to_back_triggers(make_orchestrator, sim, steps):
    dispatcher = ActionDispatcher(make_orchestrator())

    first = dispatcher.dispatch("lp_rebalance")
    second = dispatcher.dispatch("lp_rebalance")

    assert first is not None
    assert second is None

    workflow = await dispatcher.drain()
    assert workflow.state == WorkflowState.COMPLETED

    third = dispatcher.dispatch("lp_rebalance")
    assert third is not None
    again = await third

    assert again.state == WorkflowState.COMPLETED
    assert again.id != workflow.id
    # the dropped trigger produced no steps
    assert {s.workflow_id for s in steps} == {workflow.id, again.id}
    session = sim.session(SESSION)
    assert session.spent_exposure == 200_000
    assert session.action_count == 2
    assert session.active is True


@pytest.mark.asyncio
async def test_exposure_cap_stops_repeated_actions(make_orchestrator, sim):
    sim.sessions[SESSION].max_exposure = 250_000
    dispatcher = ActionDispatcher(make_orchestrator())

    results = []
    for _ in range(3):
        results.append(await dispatcher.run_now("lp_rebalance"))

    assert [w.state for w in results] == [WorkflowState.COMPLETED, WorkflowState.COMPLETED, WorkflowState.FAILED]
    failed = results[2].last_step
    assert failed.index == 3
    assert failed.status == StepStatus.ERROR
    assert "ExposureLimitExceeded" in failed.detail
    assert sim.session(SESSION).spent_exposure == 200_000


@pytest.mark.asyncio
async def test_monitor_defers_while_workflow_holds_the_session(make_orchestrator, sim, monitor):
    dispatcher = ActionDispatcher(make_orchestrator())

    task = dispatcher.dispatch("yield_switch")
    await _until_delegated(sim)
    during = await monitor.tick()
    workflow = await task
    after = await monitor.tick()

    assert during.deferred is True
    assert during.reference is None
    assert "checkpoint skipped" in during.summary
    assert workflow.succeeded
    assert after.deferred is False
    assert after.reference is not None
    assert "reconciled after 1 deferred ticks" in after.summary
    # one checkpoint from the workflow, one from the second tick
    assert sim.monitors[MONITOR].updates == 2
    assert len(monitor.memory.lines()) == 2


@pytest.mark.asyncio
async def test_next_workflow_resumes_on_execution_context_after_failure(make_orchestrator, sim, steps):
    sim.sessions[SESSION].strategy_mask = STRATEGY_LP
    dispatcher = ActionDispatcher(make_orchestrator())

    failed = await dispatcher.run_now("yield_switch")

    assert failed.state == WorkflowState.FAILED
    assert await resolve_location(sim.durable, SESSION, sim.delegation_program_id) == DelegationLocation.EPHEMERAL

    steps.clear()
    recovered = await dispatcher.run_now("lp_rebalance")

    assert recovered.succeeded
    assert steps[3].label == "Session already delegated"
    assert len(sim.submitted("delegate_session")) == 1
    assert sim.controller_of(SESSION) == sim.program_id
