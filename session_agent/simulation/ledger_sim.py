"""
InMemoryLedger: a simulated durable ledger plus execution context.

Models:
- Session records with the full authorization contract (active flag, expiry,
  device key, strategy mask, checked exposure arithmetic, action counters),
  evaluated in the same order the on-ledger program uses
- Monitor records written by `update_lp_status`
- Delegation ownership: `delegate_session` hands the record to the delegation
  holder; `undelegate_session` schedules the return, which the durable ledger
  observes only after a configurable number of ownership reads
- Receipts: rejected instructions still get a signature and confirm, but their
  receipt carries the program error, exactly like a real ledger
- Fault injection: silent instruction failures and transient I/O errors

`ledger.durable` and `ledger.context` are the two LedgerEndpoint views the
agent talks to. Raw account bytes are served through the session codec.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from session_agent.constants import AGENT_PROGRAM_ID, DELEGATION_PROGRAM_ID
from session_agent.domain.models import AccountInfo, ActionCategory, Instruction, Session, TxReceipt
from session_agent.exceptions import (
    ArithmeticOverflow,
    AuthorizationError,
    ExposureLimitExceeded,
    InvalidRange,
    SessionExpired,
    SessionInactive,
    StrategyNotEnabled,
    TransientIOError,
    UnauthorizedKey,
)
from session_agent.ledger.session_codec import encode_session
from session_agent.monitoring.logger import get_logger
from session_agent.simulation.sim_clock import SimClock

logger = get_logger(__name__)

U64_MAX = 2**64 - 1

DURABLE = "durable"
EXECUTION = "execution"

# Receipt errors that are not program error codes
ERR_NOT_DELEGATED = {"InstructionError": [0, "AccountNotDelegated"]}
ERR_WRONG_OWNER = {"InstructionError": [0, "AccountOwnedByWrongProgram"]}
ERR_UNKNOWN_ACCOUNT = {"InstructionError": [0, "AccountNotInitialized"]}
ERR_UNSUPPORTED = {"InstructionError": [0, "InvalidInstructionData"]}
ERR_SEEDS = {"InstructionError": [0, "ConstraintSeeds"]}
ERR_ALREADY_INITIALIZED = {"InstructionError": [0, "AccountAlreadyInitialized"]}
DEFAULT_SILENT_ERR = {"InstructionError": [0, "ProgramFailedToComplete"]}


class _Rejected(Exception):
    """Internal: the instruction failed; carries the receipt error."""

    def __init__(self, err: Any, message: str):
        super().__init__(message)
        self.err = err


def _program_error(error_cls: Type[AuthorizationError]) -> _Rejected:
    return _Rejected(
        {"InstructionError": [0, {"Custom": error_cls.code}]},
        f"AnchorError occurred. Error Code: {error_cls.__name__}. "
        f"Error Number: {error_cls.code}. Error Message: {error_cls.__doc__}.",
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class SimSessionRecord:
    """Mutable ledger-side state of one Session account."""
    owner: str
    device_key: str
    expires_at: datetime
    max_exposure: int
    strategy_mask: int
    controller: str
    spent_exposure: int = 0
    active: bool = True
    action_count: int = 0
    last_action_at: Optional[datetime] = None
    return_pending: bool = False
    reads_until_return: Optional[int] = None
    commits: int = 0

    def to_session(self) -> Session:
        return Session(
            owner=self.owner,
            device_key=self.device_key,
            expires_at=self.expires_at,
            max_exposure=self.max_exposure,
            spent_exposure=self.spent_exposure,
            strategy_mask=self.strategy_mask,
            active=self.active,
            action_count=self.action_count,
            last_action_at=self.last_action_at,
        )


@dataclass
class SimMonitorRecord:
    session: str
    range_low: int
    range_high: int
    last_active_bin: Optional[int] = None
    in_range: bool = True
    fee_x: int = 0
    fee_y: int = 0
    last_checked_at: Optional[datetime] = None
    updates: int = 0


@dataclass
class _Fault:
    operation: str
    surface: Optional[str]
    remaining: int
    error: Optional[Any] = None


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class InMemoryLedger:
    """Shared state behind the durable and execution-context endpoints."""

    def __init__(
        self,
        *,
        program_id: str = AGENT_PROGRAM_ID,
        delegation_program_id: str = DELEGATION_PROGRAM_ID,
        clock: Optional[SimClock] = None,
        return_after_reads: Optional[int] = 1,
    ):
        """
        Args:
            return_after_reads: Durable ownership reads until an undelegated
                record is observed back (0 = immediately, None = never).
        """
        self.program_id = program_id
        self.delegation_program_id = delegation_program_id
        self.clock = clock
        self.return_after_reads = return_after_reads

        self.sessions: Dict[str, SimSessionRecord] = {}
        self.monitors: Dict[str, SimMonitorRecord] = {}
        self.receipts: Dict[str, TxReceipt] = {}
        self.submissions: List[Tuple[str, Instruction]] = []

        self._sig_counter = 0
        self._silent_failures: Dict[str, List[Any]] = {}
        self._faults: List[_Fault] = []

        self.durable = SimLedgerEndpoint(self, DURABLE)
        self.context = SimLedgerEndpoint(self, EXECUTION)

    def now(self) -> datetime:
        return self.clock.now() if self.clock else datetime.now(timezone.utc)

    # -- Setup ---------------------------------------------------------------

    def create_session(
        self,
        address: str,
        *,
        owner: str,
        device_key: str,
        ttl_seconds: int,
        max_exposure: int,
        strategy_mask: int,
    ) -> Session:
        if max_exposure < 0 or max_exposure > U64_MAX:
            raise ValueError(f"max_exposure out of range: {max_exposure}")
        record = SimSessionRecord(
            owner=owner,
            device_key=device_key,
            expires_at=self.now() + timedelta(seconds=ttl_seconds),
            max_exposure=max_exposure,
            strategy_mask=strategy_mask,
            controller=self.program_id,
            last_action_at=self.now(),
        )
        self.sessions[address] = record
        logger.debug("Sim session created", session=address, max_exposure=max_exposure, mask=strategy_mask)
        return record.to_session()

    def register_monitor(self, address: str, *, session: str, range_low: int, range_high: int) -> None:
        if range_low > range_high:
            raise InvalidRange(f"Invalid range: {range_low} > {range_high}")
        self.monitors[address] = SimMonitorRecord(session=session, range_low=range_low, range_high=range_high)

    def revoke_session(self, address: str) -> None:
        self._record(address).active = False

    def complete_return(self, address: str) -> None:
        """Force a pending ownership return to land now."""
        record = self._record(address)
        record.controller = self.program_id
        record.return_pending = False
        record.reads_until_return = None

    # -- Fault injection ----------------------------------------------------

    def fail_next(self, instruction_name: str, err: Any = None) -> None:
        """The next `instruction_name` is included but its receipt carries `err`."""
        self._silent_failures.setdefault(instruction_name, []).append(err or DEFAULT_SILENT_ERR)

    def raise_next(
        self,
        operation: str,
        *,
        surface: Optional[str] = None,
        times: int = 1,
        error: Optional[Exception] = None,
    ) -> None:
        """The next `times` calls of endpoint method `operation` raise TransientIOError."""
        self._faults.append(_Fault(operation=operation, surface=surface, remaining=times, error=error))

    def _check_fault(self, operation: str, surface: str) -> None:
        for fault in self._faults:
            if fault.operation == operation and fault.surface in (None, surface) and fault.remaining > 0:
                fault.remaining -= 1
                raise fault.error or TransientIOError(f"Injected {operation} failure on {surface}")

    # -- Queries --------------------------------------------------------------

    def session(self, address: str) -> Session:
        return self._record(address).to_session()

    def controller_of(self, address: str) -> str:
        return self._record(address).controller

    def submitted(self, name: Optional[str] = None, surface: Optional[str] = None) -> List[Instruction]:
        return [
            ix for (where, ix) in self.submissions
            if (name is None or ix.name == name) and (surface is None or where == surface)
        ]

    def _record(self, address: str) -> SimSessionRecord:
        record = self.sessions.get(address)
        if record is None:
            raise KeyError(f"No simulated session at {address}")
        return record

    # -- Account reads -------------------------------------------------------

    def account_info(self, address: str, surface: str) -> Optional[AccountInfo]:
        record = self.sessions.get(address)
        if record is not None:
            if surface == DURABLE:
                self._observe_return(record)
                return AccountInfo(address=address, owner=record.controller, data=encode_session(record.to_session()))
            if record.controller == self.delegation_program_id:
                return AccountInfo(address=address, owner=self.program_id, data=encode_session(record.to_session()))
            return None

        monitor = self.monitors.get(address)
        if monitor is not None and surface == DURABLE:
            payload = {
                "session": monitor.session,
                "lastActiveBin": monitor.last_active_bin,
                "isInRange": monitor.in_range,
                "feeX": monitor.fee_x,
                "feeY": monitor.fee_y,
            }
            return AccountInfo(address=address, owner=self.program_id, data=json.dumps(payload).encode())
        return None

    def _observe_return(self, record: SimSessionRecord) -> None:
        if not record.return_pending or record.reads_until_return is None:
            return
        record.reads_until_return -= 1
        if record.reads_until_return <= 0:
            record.controller = self.program_id
            record.return_pending = False
            record.reads_until_return = None

    # -- Submission ------------------------------------------------------------

    def _next_signature(self) -> str:
        self._sig_counter += 1
        return hashlib.sha256(f"sim-tx-{self._sig_counter}".encode()).hexdigest()

    def submit(self, instruction: Instruction, surface: str) -> str:
        signature = self._next_signature()
        self.submissions.append((surface, instruction))
        logs = [f"Program {self.program_id} invoke [1]", f"Program log: Instruction: {instruction.name}"]

        queued = self._silent_failures.get(instruction.name)
        if queued:
            err = queued.pop(0)
            logs.append(f"Program {self.program_id} failed: {err}")
            self.receipts[signature] = TxReceipt(signature=signature, err=err, logs=logs, slot=self._sig_counter)
            return signature

        try:
            logs.extend(self._apply(instruction, surface))
            logs.append(f"Program {self.program_id} success")
            err = None
        except _Rejected as rejected:
            logs.append(f"Program log: {rejected}")
            logs.append(f"Program {self.program_id} failed")
            err = rejected.err

        self.receipts[signature] = TxReceipt(signature=signature, err=err, logs=logs, slot=self._sig_counter)
        return signature

    def _apply(self, ix: Instruction, surface: str) -> List[str]:
        handlers: Dict[Tuple[str, str], Callable[[Instruction], List[str]]] = {
            (DURABLE, "initialize_session"): self._initialize,
            (DURABLE, "delegate_session"): self._delegate,
            (DURABLE, "update_lp_status"): self._update_status,
            (EXECUTION, "execute_action"): self._execute_action,
            (EXECUTION, "commit_session"): self._commit,
            (EXECUTION, "undelegate_session"): self._undelegate,
        }
        handler = handlers.get((surface, ix.name))
        if handler is None:
            raise _Rejected(ERR_UNSUPPORTED, f"{ix.name} is not accepted on {surface}")
        return handler(ix)

    def _session_for(self, ix: Instruction) -> SimSessionRecord:
        record = self.sessions.get(ix.accounts.get("session", ""))
        if record is None:
            raise _Rejected(ERR_UNKNOWN_ACCOUNT, "session account not initialized")
        return record

    def _check_live(self, record: SimSessionRecord, signer: Optional[str]) -> None:
        if not record.active:
            raise _program_error(SessionInactive)
        if self.now() >= record.expires_at:
            raise _program_error(SessionExpired)
        if signer != record.device_key:
            raise _program_error(UnauthorizedKey)

    def _initialize(self, ix: Instruction) -> List[str]:
        address = ix.accounts.get("session", "")
        if not address or address in self.sessions:
            raise _Rejected(ERR_ALREADY_INITIALIZED, f"session account {address} already in use")
        try:
            session = self.create_session(
                address,
                owner=ix.accounts["owner"],
                device_key=ix.args["session_key"],
                ttl_seconds=int(ix.args["duration_secs"]),
                max_exposure=int(ix.args["max_lamports"]),
                strategy_mask=int(ix.args["strategy_mask"]),
            )
        except ValueError as e:
            raise _Rejected(ERR_UNSUPPORTED, str(e))
        return [
            f"Program log: Session initialized: owner={session.owner}, "
            f"expires_at={int(session.expires_at.timestamp())}, max_lamports={session.max_exposure}"
        ]

    def _delegate(self, ix: Instruction) -> List[str]:
        record = self._session_for(ix)
        if record.controller == self.delegation_program_id:
            return ["Program log: Session already delegated"]
        if ix.args.get("owner") != record.owner:
            raise _Rejected(ERR_SEEDS, "owner does not match session seeds")
        record.controller = self.delegation_program_id
        return ["Program log: Session delegated"]

    def _execute_action(self, ix: Instruction) -> List[str]:
        record = self._session_for(ix)
        if record.controller != self.delegation_program_id:
            raise _Rejected(ERR_NOT_DELEGATED, "session is not delegated to the execution context")
        self._check_live(record, ix.accounts.get("session_key"))

        action_type = int(ix.args.get("action_type", -1))
        try:
            category = ActionCategory(action_type)
        except ValueError:
            raise _program_error(StrategyNotEnabled)
        if not record.strategy_mask & category.strategy_bit:
            raise _program_error(StrategyNotEnabled)

        amount = int(ix.args.get("amount_lamports", 0))
        new_spent = record.spent_exposure + amount
        if new_spent > U64_MAX or record.action_count + 1 > U64_MAX:
            raise _program_error(ArithmeticOverflow)
        if new_spent > record.max_exposure:
            raise _program_error(ExposureLimitExceeded)

        record.spent_exposure = new_spent
        record.action_count += 1
        record.last_action_at = self.now()
        return [
            f"Program log: Action executed: type={action_type}, amount={amount}, "
            f"total_spent={record.spent_exposure}/{record.max_exposure}"
        ]

    def _commit(self, ix: Instruction) -> List[str]:
        record = self._session_for(ix)
        if record.controller != self.delegation_program_id:
            raise _Rejected(ERR_NOT_DELEGATED, "session is not delegated to the execution context")
        record.commits += 1
        return ["Program log: Session state committed"]

    def _undelegate(self, ix: Instruction) -> List[str]:
        record = self._session_for(ix)
        if record.controller != self.delegation_program_id:
            raise _Rejected(ERR_NOT_DELEGATED, "session is not delegated to the execution context")
        record.commits += 1
        record.return_pending = True
        record.reads_until_return = self.return_after_reads
        if self.return_after_reads == 0:
            self.complete_return(ix.accounts["session"])
        return ["Program log: Session undelegation scheduled"]

    def _update_status(self, ix: Instruction) -> List[str]:
        record = self._session_for(ix)
        if record.controller != self.program_id:
            raise _Rejected(ERR_WRONG_OWNER, "session account is owned by the delegation program")
        self._check_live(record, ix.accounts.get("session_key"))

        monitor = self.monitors.get(ix.accounts.get("monitor", ""))
        if monitor is None:
            raise _Rejected(ERR_UNKNOWN_ACCOUNT, "monitor account not initialized")
        active_bin = int(ix.args["active_bin"])
        was_in_range = monitor.in_range
        monitor.last_active_bin = active_bin
        monitor.in_range = monitor.range_low <= active_bin <= monitor.range_high
        monitor.fee_x = int(ix.args.get("fee_x", 0))
        monitor.fee_y = int(ix.args.get("fee_y", 0))
        monitor.last_checked_at = self.now()
        monitor.updates += 1

        logs = []
        if was_in_range and not monitor.in_range:
            logs.append(
                f"Program log: ALERT: LP position out of range! active_bin={active_bin}, "
                f"range=[{monitor.range_low}, {monitor.range_high}]"
            )
        logs.append(f"Program log: LP status: active_bin={active_bin}, in_range={monitor.in_range}")
        return logs

    # -- Confirmation ----------------------------------------------------------

    def confirm(self, signature: str) -> None:
        if signature not in self.receipts:
            raise TransientIOError(f"Signature {signature} not found")

    def transaction(self, signature: str) -> Optional[TxReceipt]:
        return self.receipts.get(signature)


class SimLedgerEndpoint:
    """LedgerEndpoint view over an InMemoryLedger surface."""

    def __init__(self, ledger: InMemoryLedger, surface: str):
        self._ledger = ledger
        self.surface = surface
        self.name = f"sim-{surface}"

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        self._ledger._check_fault("get_account_info", self.surface)
        return self._ledger.account_info(address, self.surface)

    async def submit(self, instruction: Instruction) -> str:
        self._ledger._check_fault("submit", self.surface)
        return self._ledger.submit(instruction, self.surface)

    async def confirm(self, signature: str) -> None:
        self._ledger._check_fault("confirm", self.surface)
        self._ledger.confirm(signature)

    async def get_transaction(self, signature: str) -> Optional[TxReceipt]:
        self._ledger._check_fault("get_transaction", self.surface)
        return self._ledger.transaction(signature)
