"""
Push-channel event schemas.

Outbound events are dataclasses with a `to_message()` that produces the JSON
wire shape. Inbound frames are parsed into small typed requests; anything
unrecognized parses to None and is ignored by the server.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from session_agent.domain.models import PositionSnapshot


@dataclass(frozen=True)
class TickEvent:
    """Result of one periodic monitor tick."""
    tick_number: int
    timestamp: datetime
    snapshot: Optional[PositionSnapshot] = None
    reference: Optional[str] = None
    reference_url: Optional[str] = None
    deferred: bool = False
    summary: str = ""
    error: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        snap = self.snapshot
        return {
            "type": "tick",
            "tickNumber": self.tick_number,
            "timestamp": self.timestamp.isoformat(),
            "marketPointer": snap.market_pointer if snap else None,
            "rangeLow": snap.range_low if snap else None,
            "rangeHigh": snap.range_high if snap else None,
            "inRange": snap.in_range if snap else None,
            "fees": {"x": str(snap.fee_x), "y": str(snap.fee_y)} if snap else None,
            "reference": self.reference,
            "referenceUrl": self.reference_url,
            "deferred": self.deferred,
            "summary": self.summary,
            "error": self.error,
        }


@dataclass(frozen=True)
class ConnectedEvent:
    """Static session description sent to a client after it is admitted."""
    session_address: str
    monitor_address: str
    instrument: str
    position: str
    interval_seconds: int

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "connected",
            "sessionAddress": self.session_address,
            "monitorAddress": self.monitor_address,
            "instrument": self.instrument,
            "position": self.position,
            "intervalSeconds": self.interval_seconds,
        }


@dataclass(frozen=True)
class AuthRequest:
    token: str


@dataclass(frozen=True)
class TriggerRequest:
    action: str


InboundMessage = Union[AuthRequest, TriggerRequest]


def parse_inbound(raw: Union[str, bytes]) -> Optional[InboundMessage]:
    """Parse an inbound frame. Returns None for anything not understood."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(msg, dict):
        return None

    msg_type = msg.get("type")
    if msg_type == "auth":
        token = msg.get("token")
        return AuthRequest(token=token) if isinstance(token, str) else None

    if msg_type in ("action", None) and isinstance(msg.get("action"), str):
        return TriggerRequest(action=msg["action"])

    return None
