"""
Push channel: WebSocket server for action steps, monitor ticks and triggers.

Per connection:
  1. If a shared secret is configured, the first frame must be
     {"type": "auth", "token": ...} within the auth timeout. Anything else, a
     wrong token, or silence closes the connection with 1008.
  2. The client receives a `connected` greeting and the latest tick.
  3. Inbound {"type": "action", "action": name} frames trigger workflows,
     rate-limited per connection. Unknown frames are ignored.

Every action step and tick published on the buses is broadcast to all
admitted connections; a failed send to one client never affects the others.
"""
import asyncio
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from session_agent.constants import (
    WS_AUTH_TIMEOUT_SECONDS,
    WS_MAX_PAYLOAD_BYTES,
    WS_POLICY_VIOLATION,
    WS_PORT,
)
from session_agent.domain.events import AuthRequest, ConnectedEvent, TickEvent, TriggerRequest, parse_inbound
from session_agent.domain.models import Step
from session_agent.monitoring.logger import get_logger
from session_agent.orchestration.dispatcher import ActionDispatcher
from session_agent.orchestration.progress_bus import ProgressBus, Subscription

logger = get_logger(__name__)


@dataclass
class ConnectionSession:
    """Server-owned state for one client connection."""
    id: str
    remote: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    authenticated: bool = False
    last_trigger_at: Optional[float] = None
    triggers_accepted: int = 0
    triggers_dropped: int = 0


class PushServer:
    def __init__(
        self,
        *,
        dispatcher: ActionDispatcher,
        step_bus: ProgressBus[Step],
        tick_bus: ProgressBus[TickEvent],
        greeting: ConnectedEvent,
        last_tick: Callable[[], Optional[TickEvent]] = lambda: None,
        host: str = "0.0.0.0",
        port: int = WS_PORT,
        secret: Optional[str] = None,
        auth_timeout_seconds: float = WS_AUTH_TIMEOUT_SECONDS,
        max_payload_bytes: int = WS_MAX_PAYLOAD_BYTES,
        min_trigger_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dispatcher = dispatcher
        self.step_bus = step_bus
        self.tick_bus = tick_bus
        self.greeting = greeting
        self.last_tick = last_tick
        self.host = host
        self.port = port
        self.secret = secret or None
        self.auth_timeout_seconds = auth_timeout_seconds
        self.max_payload_bytes = max_payload_bytes
        self.min_trigger_interval_seconds = min_trigger_interval_seconds
        self._clock = clock

        self.sessions: Dict[str, ConnectionSession] = {}
        self._connections: Dict[str, Any] = {}
        self._server: Optional[Server] = None
        self._subscriptions: List[Subscription] = []
        self._pumps: List["asyncio.Task[None]"] = []

    @property
    def client_count(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.start_fanout()
        self._server = await serve(self.handler, self.host, self.port, max_size=self.max_payload_bytes)
        logger.info("PUSH_SERVER_STARTED", host=self.host, port=self.port, auth_required=self.secret is not None)

    def start_fanout(self) -> None:
        """Forward every step and tick published on the buses to the clients."""
        for bus in (self.step_bus, self.tick_bus):
            sub = bus.subscribe()
            self._subscriptions.append(sub)
            self._pumps.append(asyncio.ensure_future(self._pump(sub)))

    async def _pump(self, sub: Subscription) -> None:
        async for item in sub:
            await self.broadcast(item.to_message())

    async def stop(self) -> None:
        clients = self.client_count
        for sub in self._subscriptions:
            sub.close()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        self._subscriptions.clear()
        self._pumps.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("PUSH_SERVER_STOPPED", clients=clients)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def handler(self, connection: ServerConnection) -> None:
        session = ConnectionSession(id=str(uuid.uuid4()), remote=str(getattr(connection, "remote_address", "?")))
        self.sessions[session.id] = session
        logger.info("CLIENT_CONNECTED", connection_id=session.id, remote=session.remote)
        try:
            if self.secret is not None:
                if not await self.authenticate(connection, session):
                    return
            else:
                session.authenticated = True

            await self.greet(connection)
            # no await between the last catch-up send and registration
            self._connections[session.id] = connection

            async for raw in connection:
                self.handle_message(session, raw)
        except ConnectionClosed:
            pass
        finally:
            self._connections.pop(session.id, None)
            self.sessions.pop(session.id, None)
            logger.info(
                "CLIENT_DISCONNECTED",
                connection_id=session.id,
                triggers_accepted=session.triggers_accepted,
                triggers_dropped=session.triggers_dropped,
            )

    async def authenticate(self, connection: Any, session: ConnectionSession) -> bool:
        try:
            raw = await asyncio.wait_for(connection.recv(), timeout=self.auth_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("AUTH_TIMEOUT", connection_id=session.id)
            await connection.close(WS_POLICY_VIOLATION, "Auth timeout")
            return False

        msg = parse_inbound(raw)
        if not isinstance(msg, AuthRequest) or not hmac.compare_digest(
            msg.token.encode("utf-8"), self.secret.encode("utf-8")
        ):
            logger.warning("AUTH_REJECTED", connection_id=session.id, remote=session.remote)
            await connection.close(WS_POLICY_VIOLATION, "Unauthorized")
            return False

        session.authenticated = True
        logger.info("CLIENT_AUTHENTICATED", connection_id=session.id)
        return True

    async def greet(self, connection: Any) -> None:
        """Send the greeting, then the latest tick until no newer one appeared during the send.

        The connection is not yet registered for broadcast, so ticks published
        meanwhile are caught up here and never arrive ahead of an older one.
        """
        await connection.send(json.dumps(self.greeting.to_message()))
        sent = None
        tick = self.last_tick()
        while tick is not None and tick is not sent:
            await connection.send(json.dumps(tick.to_message()))
            sent = tick
            tick = self.last_tick()

    def handle_message(self, session: ConnectionSession, raw: Any) -> Optional["asyncio.Task[Any]"]:
        msg = parse_inbound(raw)
        if isinstance(msg, TriggerRequest):
            return self.handle_trigger(session, msg.action)
        return None

    def handle_trigger(self, session: ConnectionSession, action: str) -> Optional["asyncio.Task[Any]"]:
        now = self._clock()
        if (
            session.last_trigger_at is not None
            and now - session.last_trigger_at < self.min_trigger_interval_seconds
        ):
            session.triggers_dropped += 1
            logger.info("TRIGGER_RATE_LIMITED", connection_id=session.id, action=action)
            return None
        session.last_trigger_at = now

        task = self.dispatcher.dispatch(action)
        if task is None:
            session.triggers_dropped += 1
        else:
            session.triggers_accepted += 1
        return task

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send to every admitted client. Returns the number of successful sends."""
        if not self._connections:
            return 0
        payload = json.dumps(message)
        targets = list(self._connections.items())
        results = await asyncio.gather(*(conn.send(payload) for _, conn in targets), return_exceptions=True)
        delivered = 0
        for (connection_id, _), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.debug("Broadcast send failed", connection_id=connection_id, error=str(result))
            else:
                delivered += 1
        return delivered
