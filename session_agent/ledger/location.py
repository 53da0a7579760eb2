"""
DelegationLocation resolution.

The controlling program of the Session account on the durable ledger is the
single source of truth for where authority resides. Both the orchestrator and
the periodic monitor call `resolve_location` before writing.
"""
from typing import Optional

from session_agent.domain.models import AccountInfo, DelegationLocation, Session
from session_agent.domain.protocols import LedgerEndpoint
from session_agent.exceptions import SessionNotFoundError
from session_agent.ledger.session_codec import decode_session


def location_of(info: Optional[AccountInfo], delegation_program_id: str) -> DelegationLocation:
    if info is not None and info.owner == delegation_program_id:
        return DelegationLocation.EPHEMERAL
    return DelegationLocation.DURABLE


async def resolve_location(
    ledger: LedgerEndpoint,
    session_address: str,
    delegation_program_id: str,
) -> DelegationLocation:
    info = await ledger.get_account_info(session_address)
    if info is None:
        raise SessionNotFoundError(f"Session account {session_address} not found on {ledger.name}")
    return location_of(info, delegation_program_id)


async def fetch_session(ledger: LedgerEndpoint, session_address: str) -> Session:
    info = await ledger.get_account_info(session_address)
    if info is None:
        raise SessionNotFoundError(f"Session account {session_address} not found on {ledger.name}")
    return decode_session(info.data)
