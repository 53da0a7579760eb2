"""
Tests for domain models and push-channel events.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from session_agent.domain.events import (
    AuthRequest,
    ConnectedEvent,
    TickEvent,
    TriggerRequest,
    parse_inbound,
)
from session_agent.domain.models import (
    STRATEGY_ALL,
    STRATEGY_LP,
    ActionCategory,
    PositionSnapshot,
    Session,
    Step,
    StepStatus,
    WorkflowState,
)

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_session(**overrides):
    fields = dict(
        owner="aa" * 32,
        device_key="bb" * 32,
        expires_at=NOW + timedelta(hours=1),
        max_exposure=1000,
        spent_exposure=250,
        strategy_mask=STRATEGY_LP,
        active=True,
    )
    fields.update(overrides)
    return Session(**fields)


class TestActionCategory:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("lp_rebalance", ActionCategory.LP_REBALANCE),
            ("  YIELD_SWITCH ", ActionCategory.YIELD_SWITCH),
            ("liquidation_protect", ActionCategory.LIQUIDATION_PROTECT),
            ("add_liquidity", ActionCategory.LP_REBALANCE),
            ("rebalance", ActionCategory.LP_REBALANCE),
        ],
    )
    def test_from_name(self, name, expected):
        assert ActionCategory.from_name(name) is expected

    @pytest.mark.parametrize("name", ["", "moon", None])
    def test_unknown_name_raises(self, name):
        with pytest.raises(ValueError):
            ActionCategory.from_name(name)

    def test_strategy_bits(self):
        assert [c.strategy_bit for c in ActionCategory] == [1, 2, 4]
        assert STRATEGY_ALL == 7


class TestSession:
    def test_remaining_and_pct(self):
        session = make_session()

        assert session.remaining_exposure == 750
        assert session.exposure_used_pct == 25.0

    def test_spent_above_max_is_invalid(self):
        with pytest.raises(ValueError, match="spent_exposure"):
            make_session(spent_exposure=1001)

    def test_naive_expiry_is_invalid(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            make_session(expires_at=datetime(2025, 1, 1))

    def test_expiry_is_inclusive(self):
        session = make_session()

        assert session.is_expired(session.expires_at) is True
        assert session.is_expired(session.expires_at - timedelta(seconds=1)) is False

    def test_strategy_mask(self):
        session = make_session()

        assert session.has_strategy(ActionCategory.LP_REBALANCE)
        assert not session.has_strategy(ActionCategory.YIELD_SWITCH)

    def test_zero_cap_pct(self):
        assert make_session(max_exposure=0, spent_exposure=0).exposure_used_pct == 0.0


class TestPositionSnapshot:
    def test_in_range_bounds_inclusive(self):
        assert PositionSnapshot(range_low=10, range_high=20, market_pointer=10).in_range
        assert PositionSnapshot(range_low=10, range_high=20, market_pointer=20).in_range
        assert not PositionSnapshot(range_low=10, range_high=20, market_pointer=21).in_range

    def test_describe(self):
        snap = PositionSnapshot(range_low=8380, range_high=8420, market_pointer=8450)

        assert snap.describe() == "Bin 8450 · [8380–8420] · OUT OF RANGE"

    def test_inverted_range_invalid(self):
        with pytest.raises(ValueError):
            PositionSnapshot(range_low=20, range_high=10, market_pointer=15)


def test_workflow_terminal_states():
    assert WorkflowState.COMPLETED.is_terminal
    assert WorkflowState.FAILED.is_terminal
    assert not WorkflowState.DELEGATE.is_terminal


def test_step_message_shape():
    step = Step(
        workflow_id="lp_rebalance_1",
        index=2,
        total=5,
        label="Executing LP_REBALANCE on execution context",
        status=StepStatus.PENDING,
    )

    message = step.to_message()

    assert message["type"] == "action_step"
    assert message["stepIndex"] == 2
    assert message["totalSteps"] == 5
    assert message["status"] == "pending"
    assert message["reference"] is None
    json.dumps(message)


class TestEvents:
    def test_tick_without_snapshot(self):
        event = TickEvent(tick_number=3, timestamp=NOW, summary="Tick #3", error="boom")

        message = event.to_message()

        assert message["marketPointer"] is None
        assert message["fees"] is None
        assert message["error"] == "boom"
        assert message["timestamp"] == "2025-01-01T00:00:00+00:00"

    def test_tick_fees_are_strings(self):
        snap = PositionSnapshot(range_low=1, range_high=5, market_pointer=3, fee_x=10, fee_y=2**70)
        message = TickEvent(tick_number=1, timestamp=NOW, snapshot=snap).to_message()

        assert message["fees"] == {"x": "10", "y": str(2**70)}
        assert message["inRange"] is True

    def test_connected_message(self):
        event = ConnectedEvent(
            session_address="s", monitor_address="m", instrument="SOL-USDC", position="p", interval_seconds=30
        )

        assert event.to_message() == {
            "type": "connected",
            "sessionAddress": "s",
            "monitorAddress": "m",
            "instrument": "SOL-USDC",
            "position": "p",
            "intervalSeconds": 30,
        }

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ('{"type": "auth", "token": "abc"}', AuthRequest(token="abc")),
            ('{"type": "action", "action": "lp_rebalance"}', TriggerRequest(action="lp_rebalance")),
            ('{"action": "yield_switch"}', TriggerRequest(action="yield_switch")),
            (b'{"type": "action", "action": "x"}', TriggerRequest(action="x")),
            ('{"type": "auth", "token": 5}', None),
            ('{"type": "ping"}', None),
            ("[1, 2]", None),
            ("not json", None),
        ],
    )
    def test_parse_inbound(self, raw, expected):
        assert parse_inbound(raw) == expected
