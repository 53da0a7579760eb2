"""
Tests for PushServer - authentication, greeting, triggers and fan-out.

Connections are in-memory fakes; no socket is opened.
"""
import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from session_agent.domain.events import ConnectedEvent, TickEvent
from session_agent.domain.models import Step, StepStatus
from session_agent.orchestration.progress_bus import ProgressBus
from session_agent.server.ws_server import ConnectionSession, PushServer

SECRET = "push-secret"


class FakeConnection:
    """Just enough of a websockets ServerConnection for the handler."""

    def __init__(self, *frames, fail_send=False):
        self.remote_address = ("127.0.0.1", 50000)
        self.inbound: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.inbound.put_nowait(frame)
        self.sent = []
        self.closed_with = None
        self.fail_send = fail_send

    async def recv(self):
        return await self.inbound.get()

    async def send(self, payload):
        if self.fail_send:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(payload))

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.inbound.empty():
            raise StopAsyncIteration
        return self.inbound.get_nowait()


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.dispatch.return_value = MagicMock(name="task")
    return mock


@pytest.fixture
def greeting():
    return ConnectedEvent(
        session_address="session-1",
        monitor_address="monitor-1",
        instrument="SOL-USDC",
        position="position-1",
        interval_seconds=30,
    )


@pytest.fixture
def make_server(dispatcher, greeting):
    def _make(**overrides):
        kwargs = dict(
            dispatcher=dispatcher,
            step_bus=ProgressBus("action_steps"),
            tick_bus=ProgressBus("monitor_ticks"),
            greeting=greeting,
            secret=SECRET,
            auth_timeout_seconds=0.05,
        )
        kwargs.update(overrides)
        return PushServer(**kwargs)

    return _make


def auth(token=SECRET):
    return json.dumps({"type": "auth", "token": token})


def trigger(action):
    return json.dumps({"type": "action", "action": action})


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_silence_closes_with_policy_violation(self, make_server):
        server = make_server()
        conn = FakeConnection()

        await server.handler(conn)

        assert conn.closed_with == (1008, "Auth timeout")
        assert conn.sent == []
        assert server.sessions == {}

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, make_server, dispatcher):
        server = make_server()
        conn = FakeConnection(auth("guess"), trigger("lp_rebalance"))

        await server.handler(conn)

        assert conn.closed_with == (1008, "Unauthorized")
        assert conn.sent == []
        dispatcher.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_frame_must_be_auth(self, make_server, dispatcher):
        server = make_server()
        conn = FakeConnection(trigger("lp_rebalance"))

        await server.handler(conn)

        assert conn.closed_with == (1008, "Unauthorized")
        dispatcher.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_token_gets_greeting_and_last_tick(self, make_server, dispatcher):
        tick = TickEvent(tick_number=4, timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc), summary="Tick #4")
        server = make_server(last_tick=lambda: tick)
        conn = FakeConnection(auth(), trigger("lp_rebalance"))

        await server.handler(conn)

        assert conn.closed_with is None
        assert [m["type"] for m in conn.sent] == ["connected", "tick"]
        assert conn.sent[0]["sessionAddress"] == "session-1"
        assert conn.sent[1]["tickNumber"] == 4
        dispatcher.dispatch.assert_called_once_with("lp_rebalance")

    @pytest.mark.asyncio
    async def test_no_secret_admits_immediately(self, make_server, dispatcher):
        server = make_server(secret=None)
        conn = FakeConnection(trigger("yield_switch"))

        await server.handler(conn)

        assert [m["type"] for m in conn.sent] == ["connected"]
        dispatcher.dispatch.assert_called_once_with("yield_switch")


class TestGreeting:
    @pytest.mark.asyncio
    async def test_tick_published_during_greeting_follows_the_older_one(self, make_server):
        t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
        ticks = {"latest": TickEvent(tick_number=4, timestamp=t0, summary="Tick #4")}
        server = make_server(secret=None, last_tick=lambda: ticks["latest"])
        registered_while_sending = []

        class AdvancingConnection(FakeConnection):
            async def send(self, payload):
                registered_while_sending.append(self in server._connections.values())
                await super().send(payload)
                if ticks["latest"].tick_number == 4:
                    ticks["latest"] = TickEvent(tick_number=5, timestamp=t0, summary="Tick #5")

        conn = AdvancingConnection()
        await server.handler(conn)

        assert [m.get("tickNumber") for m in conn.sent] == [None, 4, 5]
        assert registered_while_sending == [False, False, False]


class TestTriggers:
    def test_rate_limited_per_connection(self, make_server, dispatcher):
        clock = FakeClock()
        server = make_server(min_trigger_interval_seconds=2.0, clock=clock)
        session = ConnectionSession(id="c1", remote="test")

        assert server.handle_trigger(session, "lp_rebalance") is not None
        clock.now += 1.0
        assert server.handle_trigger(session, "lp_rebalance") is None
        clock.now += 1.5
        assert server.handle_trigger(session, "lp_rebalance") is not None

        assert session.triggers_accepted == 2
        assert session.triggers_dropped == 1
        assert dispatcher.dispatch.call_count == 2

    def test_rate_limit_is_not_shared(self, make_server):
        server = make_server(min_trigger_interval_seconds=60.0, clock=FakeClock())
        first = ConnectionSession(id="c1", remote="test")
        second = ConnectionSession(id="c2", remote="test")

        assert server.handle_trigger(first, "lp_rebalance") is not None
        assert server.handle_trigger(second, "lp_rebalance") is not None

    def test_dropped_dispatch_counted(self, make_server, dispatcher):
        dispatcher.dispatch.return_value = None
        server = make_server()
        session = ConnectionSession(id="c1", remote="test")

        assert server.handle_trigger(session, "lp_rebalance") is None
        assert session.triggers_dropped == 1

    def test_unknown_frames_ignored(self, make_server, dispatcher):
        server = make_server()
        session = ConnectionSession(id="c1", remote="test")

        assert server.handle_message(session, '{"type": "ping"}') is None
        assert server.handle_message(session, "garbage") is None
        dispatcher.dispatch.assert_not_called()


class TestFanout:
    @pytest.mark.asyncio
    async def test_failing_client_does_not_affect_others(self, make_server):
        server = make_server()
        good = FakeConnection()
        bad = FakeConnection(fail_send=True)
        server._connections = {"good": good, "bad": bad}

        delivered = await server.broadcast({"type": "tick", "tickNumber": 1})

        assert delivered == 1
        assert good.sent == [{"type": "tick", "tickNumber": 1}]

    @pytest.mark.asyncio
    async def test_broadcast_without_clients(self, make_server):
        assert await make_server().broadcast({"type": "tick"}) == 0

    @pytest.mark.asyncio
    async def test_bus_items_reach_clients(self, make_server):
        server = make_server()
        conn = FakeConnection()
        server._connections = {"c1": conn}
        server.start_fanout()

        server.step_bus.publish(
            Step(workflow_id="w1", index=1, total=5, label="Reading position", status=StepStatus.PENDING)
        )
        server.tick_bus.publish(
            TickEvent(tick_number=1, timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc), summary="Tick #1")
        )
        for _ in range(5):
            await asyncio.sleep(0)
        await server.stop()

        assert sorted(m["type"] for m in conn.sent) == ["action_step", "tick"]
        assert server.step_bus.subscriber_count == 0
