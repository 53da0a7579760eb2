"""
HTTP position reader.

Fetches the monitored position's current metrics from a market-state service
and builds an immutable PositionSnapshot. Read-only: no signing, no writes.
"""
import asyncio
import ssl
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
import certifi

from session_agent.domain.models import PositionSnapshot
from session_agent.exceptions import PositionNotFoundError, TransientIOError
from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)


def snapshot_from_payload(payload: Dict[str, Any]) -> PositionSnapshot:
    """Build a snapshot from the service's JSON shape.

    Expected keys: activeBin, positionMinBin, positionMaxBin, feeX, feeY.
    Fees are raw integer amounts, possibly sent as strings.
    """
    try:
        return PositionSnapshot(
            range_low=int(payload["positionMinBin"]),
            range_high=int(payload["positionMaxBin"]),
            market_pointer=int(payload["activeBin"]),
            fee_x=int(payload.get("feeX") or 0),
            fee_y=int(payload.get("feeY") or 0),
            observed_at=datetime.now(timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise PositionNotFoundError(f"Malformed position payload: {e}") from e


class HttpPositionOracle:
    """PositionOracle backed by a market-state HTTP endpoint."""

    def __init__(self, url: str, instrument: str, position: str, timeout_seconds: float = 20.0):
        self.url = url
        self.instrument = instrument
        self.position = position
        self.timeout_seconds = timeout_seconds
        self._ssl_context: Optional[ssl.SSLContext] = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def read_position(self) -> PositionSnapshot:
        params = {"pool": self.instrument, "position": self.position}
        try:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.get(self.url, params=params) as response:
                    if response.status == 404:
                        raise PositionNotFoundError(f"Position {self.position} not found")
                    if response.status != 200:
                        raise TransientIOError(f"Position read HTTP {response.status}: {(await response.text())[:200]}")
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"Position read failed: {str(e) or type(e).__name__}") from e

        if not isinstance(payload, dict):
            raise PositionNotFoundError("Position payload is not an object")
        snapshot = snapshot_from_payload(payload)
        logger.debug("Position read", market_pointer=snapshot.market_pointer, in_range=snapshot.in_range)
        return snapshot
