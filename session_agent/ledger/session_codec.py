"""
Binary codec for the Session account.

Layout (little-endian, no padding):

    [8 discriminator][32 owner][32 device_key][8 expires_at i64][8 max_exposure u64]
    [8 spent_exposure u64][1 active][1 bump][1 strategy_mask][8 action_count u64]
    [8 last_action_at i64]

Principals are carried as 32 raw bytes and exposed as lowercase hex strings.
The owner can be read from bytes 8..40 whichever program currently controls
the account, which is what the delegate phase relies on.
"""
import hashlib
import struct
from datetime import datetime, timezone
from typing import Optional

from session_agent.constants import ACCOUNT_DISCRIMINATOR_LEN, PRINCIPAL_LEN
from session_agent.domain.models import Session
from session_agent.exceptions import SessionNotFoundError

_LAYOUT = struct.Struct("<8s32s32sqQQ?BBQq")

SESSION_ACCOUNT_LEN = _LAYOUT.size
SESSION_DISCRIMINATOR = hashlib.sha256(b"account:AgentSession").digest()[:ACCOUNT_DISCRIMINATOR_LEN]


def _principal_to_bytes(principal: str) -> bytes:
    raw = bytes.fromhex(principal)
    if len(raw) != PRINCIPAL_LEN:
        raise ValueError(f"Principal must be {PRINCIPAL_LEN} bytes, got {len(raw)}")
    return raw


def read_session_owner(data: Optional[bytes]) -> Optional[str]:
    """Owner principal from raw account bytes, or None if the data is too short."""
    end = ACCOUNT_DISCRIMINATOR_LEN + PRINCIPAL_LEN
    if not data or len(data) < end:
        return None
    return data[ACCOUNT_DISCRIMINATOR_LEN:end].hex()


def decode_session(data: bytes) -> Session:
    if len(data) < SESSION_ACCOUNT_LEN:
        raise SessionNotFoundError(
            f"Session account too short: {len(data)} bytes (expected {SESSION_ACCOUNT_LEN})"
        )
    (
        discriminator,
        owner,
        device_key,
        expires_at,
        max_exposure,
        spent_exposure,
        active,
        _bump,
        strategy_mask,
        action_count,
        last_action_at,
    ) = _LAYOUT.unpack_from(data)
    if discriminator != SESSION_DISCRIMINATOR:
        raise SessionNotFoundError("Account is not a Session (discriminator mismatch)")

    try:
        return Session(
            owner=owner.hex(),
            device_key=device_key.hex(),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            max_exposure=max_exposure,
            spent_exposure=spent_exposure,
            strategy_mask=strategy_mask,
            active=active,
            action_count=action_count,
            last_action_at=datetime.fromtimestamp(last_action_at, tz=timezone.utc),
        )
    except ValueError as e:
        raise SessionNotFoundError(f"Corrupt session account: {e}") from e


def encode_session(session: Session, bump: int = 255) -> bytes:
    last_action_at = session.last_action_at or session.expires_at
    return _LAYOUT.pack(
        SESSION_DISCRIMINATOR,
        _principal_to_bytes(session.owner),
        _principal_to_bytes(session.device_key),
        int(session.expires_at.timestamp()),
        session.max_exposure,
        session.spent_exposure,
        session.active,
        bump,
        session.strategy_mask,
        session.action_count,
        int(last_action_at.timestamp()),
    )
