"""
DelegationOrchestrator: the five-phase delegated action workflow.

    1. ReadPosition       read a PositionSnapshot (no side effects yet)
    2. Delegate           move the Session record to the execution context
                          (no-op if it is already there), then wait for it to settle
    3. ExecuteOnContext   submit the scoped action, signed by the device key
    4. CommitAndReturn    commit state, then request ownership return
    5. Checkpoint         wait for the return, then checkpoint the phase-1 snapshot

Each phase emits a `pending` step and then one terminal step on the
ProgressBus. Phases run strictly in order; an agent error stops the workflow
with an error step at the failing phase's index. Anything unexpected is caught
at the workflow boundary and reported as a single step with index -1. The
workflow never raises into the host process (cancellation excepted).

If ownership has not returned when the poll budget runs out, phase 5 still
succeeds with a "sync pending" detail: phases 2-4 are already final and the
periodic monitor checkpoints once the record is back.

Exposure cap and strategy mask are NOT checked here; the execution context
enforces them and its rejection arrives as an AuthorizationError.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from session_agent.constants import DEFAULT_ACTION_AMOUNT, SETTLE_DELAY_SECONDS
from session_agent.domain.models import (
    ActionCategory,
    ActionWorkflow,
    DelegationLocation,
    PositionSnapshot,
    Step,
    StepStatus,
    WorkflowState,
)
from session_agent.domain.protocols import LedgerEndpoint, PositionOracle
from session_agent.exceptions import AgentError, SessionNotFoundError
from session_agent.ledger import instructions
from session_agent.ledger.explorer import ExplorerLinks
from session_agent.ledger.location import location_of
from session_agent.ledger.receipts import submit_and_verify
from session_agent.ledger.session_codec import read_session_owner
from session_agent.monitoring.logger import bind_log_context, clear_log_context, get_logger
from session_agent.orchestration.poller import ReconciliationPoller
from session_agent.orchestration.progress_bus import ProgressBus

logger = get_logger(__name__)

TOTAL_STEPS = 5
UNEXPECTED_ERROR_INDEX = -1

PHASE_NAMES = {
    1: "Read position",
    2: "Delegate",
    3: "Execute",
    4: "Commit & return",
    5: "Checkpoint",
}

_PHASE_STATES = {
    1: WorkflowState.READ_POSITION,
    2: WorkflowState.DELEGATE,
    3: WorkflowState.EXECUTE_ON_CONTEXT,
    4: WorkflowState.COMMIT_AND_RETURN,
    5: WorkflowState.CHECKPOINT,
}


def _short(signature: str) -> str:
    return f"{signature[:8]}…"


class DelegationOrchestrator:
    """Runs one delegated action end to end and reports every phase."""

    def __init__(
        self,
        *,
        oracle: PositionOracle,
        ledger: LedgerEndpoint,
        context: LedgerEndpoint,
        bus: ProgressBus[Step],
        poller: ReconciliationPoller,
        session_address: str,
        monitor_address: str,
        device_key: str,
        delegation_program_id: str,
        settle_delay_seconds: float = SETTLE_DELAY_SECONDS,
        action_amount: int = DEFAULT_ACTION_AMOUNT,
        links: Optional[ExplorerLinks] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.oracle = oracle
        self.ledger = ledger
        self.context = context
        self.bus = bus
        self.poller = poller
        self.session_address = session_address
        self.monitor_address = monitor_address
        self.device_key = device_key
        self.delegation_program_id = delegation_program_id
        self.settle_delay_seconds = settle_delay_seconds
        self.action_amount = action_amount
        self.links = links or ExplorerLinks()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def run(self, category: ActionCategory, workflow_id: Optional[str] = None) -> ActionWorkflow:
        workflow = ActionWorkflow(
            id=workflow_id or f"{category.slug}_{uuid.uuid4()}",
            category=category,
            total=TOTAL_STEPS,
        )
        bind_log_context(workflow_id=workflow.id)
        logger.info("WORKFLOW_START", category=category.slug, amount=self.action_amount)

        phase = 0
        try:
            phase = self._enter(workflow, 1)
            snapshot = await self._read_position(workflow)

            phase = self._enter(workflow, 2)
            await self._delegate(workflow)

            phase = self._enter(workflow, 3)
            await self._execute(workflow, category)

            phase = self._enter(workflow, 4)
            await self._commit_and_return(workflow)

            phase = self._enter(workflow, 5)
            await self._checkpoint(workflow, snapshot)

            workflow.state = WorkflowState.COMPLETED
        except AgentError as e:
            workflow.state = WorkflowState.FAILED
            logger.error(
                "PHASE_FAILED",
                phase=phase,
                phase_name=PHASE_NAMES.get(phase),
                error=str(e),
                error_type=type(e).__name__,
                error_category=e.category,
            )
            self._emit(
                workflow,
                phase,
                f"{PHASE_NAMES.get(phase, 'Workflow')} failed: {e}",
                StepStatus.ERROR,
                reference=getattr(e, "signature", None),
                detail=f"{e.category} · {type(e).__name__}",
            )
        except Exception as e:
            workflow.state = WorkflowState.FAILED
            logger.exception("WORKFLOW_UNEXPECTED_ERROR", phase=phase, error=str(e))
            self._emit(
                workflow,
                UNEXPECTED_ERROR_INDEX,
                f"Error: {e}",
                StepStatus.ERROR,
                detail=type(e).__name__,
            )
        finally:
            workflow.finished_at = datetime.now(timezone.utc)
            logger.info(
                "WORKFLOW_END",
                state=workflow.state.value,
                steps=len(workflow.steps),
                duration_seconds=round((workflow.finished_at - workflow.started_at).total_seconds(), 3),
            )
            clear_log_context("workflow_id")

        return workflow

    def _enter(self, workflow: ActionWorkflow, phase: int) -> int:
        workflow.state = _PHASE_STATES[phase]
        return phase

    def _emit(
        self,
        workflow: ActionWorkflow,
        index: int,
        label: str,
        status: StepStatus,
        *,
        reference: Optional[str] = None,
        reference_url: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> Step:
        step = Step(
            workflow_id=workflow.id,
            index=index,
            total=workflow.total,
            label=label,
            status=status,
            reference=reference,
            reference_url=reference_url,
            detail=detail,
        )
        workflow.record(step)
        self.bus.publish(step)
        return step

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _read_position(self, workflow: ActionWorkflow) -> PositionSnapshot:
        self._emit(workflow, 1, "Reading position", StepStatus.PENDING)
        snapshot = await self.oracle.read_position()
        self._emit(workflow, 1, "Position read", StepStatus.SUCCESS, detail=snapshot.describe())
        return snapshot

    async def _delegate(self, workflow: ActionWorkflow) -> None:
        self._emit(workflow, 2, "Delegating session to execution context", StepStatus.PENDING)

        info = await self.ledger.get_account_info(self.session_address)
        if info is None:
            raise SessionNotFoundError(f"Session account {self.session_address} not found on {self.ledger.name}")

        if location_of(info, self.delegation_program_id) == DelegationLocation.EPHEMERAL:
            logger.info("DELEGATE_SKIPPED", reason="already_delegated")
            self._emit(
                workflow,
                2,
                "Session already delegated",
                StepStatus.SUCCESS,
                detail="Session record already under execution-context control; no delegate submitted",
            )
            return

        owner = read_session_owner(info.data)
        if not owner:
            raise SessionNotFoundError(
                "Could not read session owner from the session account; is the session address correct?"
            )

        signature = await submit_and_verify(
            self.ledger,
            instructions.delegate_session(owner=owner, payer=self.device_key, session=self.session_address),
        )
        # the execution context does not see a freshly delegated record immediately
        await self._sleep(self.settle_delay_seconds)

        self._emit(
            workflow,
            2,
            "Session delegated to execution context",
            StepStatus.SUCCESS,
            reference=signature,
            reference_url=self.links.durable(signature),
            detail=f"Session record transferred · settled {self.settle_delay_seconds:g}s",
        )

    async def _execute(self, workflow: ActionWorkflow, category: ActionCategory) -> None:
        self._emit(workflow, 3, f"Executing {category.name} on execution context", StepStatus.PENDING)
        signature = await submit_and_verify(
            self.context,
            instructions.execute_action(
                category, self.action_amount, device_key=self.device_key, session=self.session_address
            ),
        )
        self._emit(
            workflow,
            3,
            f"{category.name} confirmed on execution context",
            StepStatus.SUCCESS,
            reference=signature,
            reference_url=self.links.execution(signature),
            detail=f"execute_action ({category.name}) · amount {self.action_amount}",
        )

    async def _commit_and_return(self, workflow: ActionWorkflow) -> None:
        self._emit(workflow, 4, "Committing state & undelegating", StepStatus.PENDING)
        commit_sig = await submit_and_verify(
            self.context, instructions.commit_session(payer=self.device_key, session=self.session_address)
        )
        logger.info("Session committed", signature=commit_sig)
        undelegate_sig = await submit_and_verify(
            self.context, instructions.undelegate_session(payer=self.device_key, session=self.session_address)
        )
        logger.info("Session undelegation requested", signature=undelegate_sig)
        self._emit(
            workflow,
            4,
            "State committed & undelegated",
            StepStatus.SUCCESS,
            reference=undelegate_sig,
            reference_url=self.links.execution(undelegate_sig),
            detail=f"commit: {_short(commit_sig)} · undelegate: {_short(undelegate_sig)}",
        )

    async def _checkpoint(self, workflow: ActionWorkflow, snapshot: PositionSnapshot) -> None:
        self._emit(workflow, 5, "Checkpointing position status", StepStatus.PENDING)

        result = await self.poller.wait_for_return()
        if not result.reconciled:
            logger.warning("CHECKPOINT_DEFERRED_TO_MONITOR", waited_seconds=result.waited_seconds)
            self._emit(
                workflow,
                5,
                "Execution flow complete; base-ledger sync pending",
                StepStatus.SUCCESS,
                detail=(
                    "Execution-context transactions confirmed. Ownership return to the durable "
                    f"ledger still propagating after {result.waited_seconds:g}s. The next monitor "
                    "tick will checkpoint once the record is returned."
                ),
            )
            return

        signature = await submit_and_verify(
            self.ledger,
            instructions.update_status(
                snapshot,
                device_key=self.device_key,
                session=self.session_address,
                monitor=self.monitor_address,
            ),
        )
        self._emit(
            workflow,
            5,
            "Position status checkpointed",
            StepStatus.SUCCESS,
            reference=signature,
            reference_url=self.links.durable(signature),
            detail=f"{snapshot.describe()} · returned after {result.waited_seconds:g}s",
        )
