"""
Domain models for the session agent.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DelegationLocation(str, Enum):
    """Where authority over the Session record currently resides."""
    DURABLE = "durable"
    EPHEMERAL = "ephemeral"


class ActionCategory(int, Enum):
    """Action category; the value is the bit index into a session's strategy mask."""
    LP_REBALANCE = 0
    YIELD_SWITCH = 1
    LIQUIDATION_PROTECT = 2

    @property
    def strategy_bit(self) -> int:
        return 1 << self.value

    @property
    def slug(self) -> str:
        return self.name.lower()

    @classmethod
    def from_name(cls, name: str) -> "ActionCategory":
        """Resolve a trigger name (case-insensitive, with aliases)."""
        key = (name or "").strip().lower()
        key = _ACTION_ALIASES.get(key, key)
        for category in cls:
            if category.slug == key:
                return category
        raise ValueError(f"Unknown action category: {name!r}")


_ACTION_ALIASES = {
    "add_liquidity": "lp_rebalance",
    "rebalance": "lp_rebalance",
}

STRATEGY_LP = ActionCategory.LP_REBALANCE.strategy_bit
STRATEGY_YIELD = ActionCategory.YIELD_SWITCH.strategy_bit
STRATEGY_LIQUIDATION = ActionCategory.LIQUIDATION_PROTECT.strategy_bit
STRATEGY_ALL = STRATEGY_LP | STRATEGY_YIELD | STRATEGY_LIQUIDATION


class StepStatus(str, Enum):
    """Status of a single workflow step."""
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class WorkflowState(str, Enum):
    """Orchestrator state machine."""
    IDLE = "idle"
    READ_POSITION = "read_position"
    DELEGATE = "delegate"
    EXECUTE_ON_CONTEXT = "execute_on_context"
    COMMIT_AND_RETURN = "commit_and_return"
    CHECKPOINT = "checkpoint"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.COMPLETED, WorkflowState.FAILED)


@dataclass(frozen=True)
class Session:
    """
    Per-delegation authorization record, as decoded from the ledger.

    Owned and mutated exclusively by the ledger; the agent only reads it.
    """
    owner: str
    device_key: str
    expires_at: datetime
    max_exposure: int
    spent_exposure: int
    strategy_mask: int
    active: bool
    action_count: int = 0
    last_action_at: Optional[datetime] = None

    def __post_init__(self):
        if self.expires_at.tzinfo is None:
            raise ValueError("Session expires_at must be timezone-aware (UTC)")
        if self.spent_exposure > self.max_exposure:
            raise ValueError(
                f"Invalid session: spent_exposure ({self.spent_exposure}) > max_exposure ({self.max_exposure})"
            )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def has_strategy(self, category: ActionCategory) -> bool:
        return bool(self.strategy_mask & category.strategy_bit)

    @property
    def remaining_exposure(self) -> int:
        return self.max_exposure - self.spent_exposure

    @property
    def exposure_used_pct(self) -> float:
        if self.max_exposure <= 0:
            return 0.0
        return self.spent_exposure / self.max_exposure * 100.0


@dataclass(frozen=True)
class PositionSnapshot:
    """Market/position metrics read from the position oracle. Immutable once read."""
    range_low: int
    range_high: int
    market_pointer: int
    fee_x: int = 0
    fee_y: int = 0
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.range_low > self.range_high:
            raise ValueError(f"Invalid range: low ({self.range_low}) > high ({self.range_high})")

    @property
    def in_range(self) -> bool:
        return self.range_low <= self.market_pointer <= self.range_high

    def describe(self) -> str:
        state = "in range" if self.in_range else "OUT OF RANGE"
        return f"Bin {self.market_pointer} · [{self.range_low}–{self.range_high}] · {state}"


@dataclass(frozen=True)
class AccountInfo:
    """Raw account as returned by a ledger read; `owner` is the controlling program."""
    address: str
    owner: str
    data: bytes


@dataclass(frozen=True)
class TxReceipt:
    """Execution receipt for a submitted transaction."""
    signature: str
    err: Any = None
    logs: List[str] = field(default_factory=list)
    slot: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.err is None


@dataclass(frozen=True)
class Instruction:
    """A program instruction to submit to the ledger or execution context."""
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    accounts: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Step:
    """One workflow step event."""
    workflow_id: str
    index: int
    total: int
    label: str
    status: StepStatus
    reference: Optional[str] = None
    reference_url: Optional[str] = None
    detail: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "action_step",
            "workflowId": self.workflow_id,
            "stepIndex": self.index,
            "totalSteps": self.total,
            "label": self.label,
            "status": self.status.value,
            "reference": self.reference,
            "referenceUrl": self.reference_url,
            "detail": self.detail,
        }


@dataclass
class ActionWorkflow:
    """In-memory record of one triggered action. Never persisted."""
    id: str
    category: ActionCategory
    total: int
    state: WorkflowState = WorkflowState.IDLE
    steps: List[Step] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def record(self, step: Step) -> None:
        self.steps.append(step)

    @property
    def last_step(self) -> Optional[Step]:
        return self.steps[-1] if self.steps else None

    @property
    def succeeded(self) -> bool:
        return self.state == WorkflowState.COMPLETED
