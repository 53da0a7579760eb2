"""
ActionDispatcher: turns trigger names into gated orchestrator runs.

A trigger is dropped (no task, no step) when the name is not a known action
category or when a workflow is already in flight.
"""
import asyncio
from typing import Optional

from session_agent.domain.models import ActionCategory, ActionWorkflow
from session_agent.monitoring.logger import get_logger
from session_agent.orchestration.orchestrator import DelegationOrchestrator
from session_agent.runtime.gate import ConcurrencyGate

logger = get_logger(__name__)


class ActionDispatcher:
    def __init__(self, orchestrator: DelegationOrchestrator, gate: Optional[ConcurrencyGate] = None):
        self.orchestrator = orchestrator
        self.gate = gate or ConcurrencyGate()
        self.inflight: Optional["asyncio.Task[ActionWorkflow]"] = None

    @staticmethod
    def resolve(action: str) -> Optional[ActionCategory]:
        try:
            return ActionCategory.from_name(action)
        except ValueError:
            logger.warning("TRIGGER_DROPPED", reason="unknown_action", action=action)
            return None

    def dispatch(self, action: str) -> Optional["asyncio.Task[ActionWorkflow]"]:
        """Start a workflow in the background. Returns None if the trigger was dropped."""
        category = self.resolve(action)
        if category is None:
            return None
        task = self.gate.spawn(lambda: self.orchestrator.run(category), name=f"workflow:{category.slug}")
        if task is None:
            logger.info("TRIGGER_DROPPED", reason="workflow_in_flight", action=category.slug)
            return None
        logger.info("TRIGGER_ACCEPTED", action=category.slug)
        self.inflight = task
        return task

    async def drain(self) -> Optional[ActionWorkflow]:
        """Wait for the in-flight workflow, if any, to finish."""
        task = self.inflight
        if task is None:
            return None
        workflow = await asyncio.shield(task)
        if self.inflight is task:
            self.inflight = None
        return workflow

    async def run_now(self, action: str) -> Optional[ActionWorkflow]:
        """Run a workflow to completion in the caller's task (CLI path)."""
        category = self.resolve(action)
        if category is None:
            return None
        with self.gate.slot() as acquired:
            if not acquired:
                logger.info("TRIGGER_DROPPED", reason="workflow_in_flight", action=category.slug)
                return None
            return await self.orchestrator.run(category)
