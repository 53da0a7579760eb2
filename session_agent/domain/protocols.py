"""
Domain protocols (interfaces) for dependency inversion.

The durable ledger and the execution context expose the same surface; the
orchestrator and monitor depend on these protocols, not on the JSON-RPC
client or the simulator.
"""
from typing import Optional, Protocol, runtime_checkable

from session_agent.domain.models import AccountInfo, Instruction, PositionSnapshot, TxReceipt


@runtime_checkable
class PositionOracle(Protocol):
    """Read-only source of position metrics for the monitored instrument."""

    async def read_position(self) -> PositionSnapshot: ...


@runtime_checkable
class LedgerEndpoint(Protocol):
    """
    One execution surface: the durable ledger or the ephemeral execution context.

    `submit` returns as soon as the transaction is accepted for inclusion;
    callers must `confirm` and then inspect `get_transaction` to learn whether
    the instruction itself succeeded (see session_agent.ledger.receipts).
    """

    name: str

    async def get_account_info(self, address: str) -> Optional[AccountInfo]: ...

    async def submit(self, instruction: Instruction) -> str: ...

    async def confirm(self, signature: str) -> None: ...

    async def get_transaction(self, signature: str) -> Optional[TxReceipt]: ...
