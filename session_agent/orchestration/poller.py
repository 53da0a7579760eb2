"""
ReconciliationPoller: wait for the Session record to come back to the durable ledger.

After undelegation the execution context schedules the ownership return; the
durable ledger observes it after a variable propagation delay. The poller
checks the account's controlling program every interval and stops as soon as
it is no longer the delegation holder. Running out of attempts is an expected
outcome (reconciled=False), never an exception.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from session_agent.constants import RECONCILE_MAX_POLL_ATTEMPTS, RECONCILE_POLL_INTERVAL_SECONDS
from session_agent.domain.protocols import LedgerEndpoint
from session_agent.exceptions import TransientIOError
from session_agent.monitoring.logger import get_logger
from session_agent.utils.polling import poll_until

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    reconciled: bool
    attempts: int
    waited_seconds: float
    owner: Optional[str] = None


class ReconciliationPoller:
    """Detects the Session record's ownership returning from the delegation holder."""

    def __init__(
        self,
        ledger: LedgerEndpoint,
        session_address: str,
        delegation_program_id: str,
        *,
        interval_seconds: float = RECONCILE_POLL_INTERVAL_SECONDS,
        max_attempts: int = RECONCILE_MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.session_address = session_address
        self.delegation_program_id = delegation_program_id
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep

    @property
    def budget_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts

    async def _returned(self) -> Tuple[bool, Any]:
        info = await self.ledger.get_account_info(self.session_address)
        if info is None:
            return True, None
        return info.owner != self.delegation_program_id, info.owner

    async def wait_for_return(self) -> ReconciliationResult:
        result = await poll_until(
            self._returned,
            interval_seconds=self.interval_seconds,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
            tolerate=(TransientIOError,),
            label="Undelegation propagation",
        )
        outcome = ReconciliationResult(
            reconciled=result.succeeded,
            attempts=result.attempts,
            waited_seconds=result.waited_seconds,
            owner=result.value,
        )
        if outcome.reconciled:
            logger.info("OWNERSHIP_RETURNED", attempts=outcome.attempts, waited_seconds=outcome.waited_seconds)
        else:
            logger.warning(
                "OWNERSHIP_RETURN_PENDING",
                attempts=outcome.attempts,
                waited_seconds=outcome.waited_seconds,
                budget_seconds=self.budget_seconds,
            )
        return outcome
