"""
Tests for the JSON-RPC ledger client and the HTTP position oracle.
"""
import asyncio
import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from session_agent.domain.models import Instruction
from session_agent.exceptions import (
    ConfigurationError,
    ExposureLimitExceeded,
    PositionNotFoundError,
    TransientIOError,
)
from session_agent.ledger.oracle import HttpPositionOracle, snapshot_from_payload
from session_agent.ledger.rpc_client import LedgerRpcClient

SECRET = base64.b64encode(b"device-secret").decode()


def _client(**kwargs) -> LedgerRpcClient:
    return LedgerRpcClient(
        "durable",
        "https://rpc.example",
        device_key="device-1",
        device_secret=SECRET,
        **kwargs,
    )


def _http(status=200, payload=None, text=""):
    """ClientSession factory whose post/get yield one canned response."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=text)

    request_ctx = MagicMock()
    request_ctx.__aenter__ = AsyncMock(return_value=response)
    request_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=request_ctx)
    session.get = MagicMock(return_value=request_ctx)

    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx, session


def _patched(module, session_ctx):
    return (
        patch(f"session_agent.ledger.{module}.aiohttp.TCPConnector"),
        patch(f"session_agent.ledger.{module}.aiohttp.ClientSession", return_value=session_ctx),
    )


class TestSigning:
    def test_signature_matches_hmac_sha512_of_sha256(self):
        client = _client()
        body = '{"method":"submitInstruction"}'

        signature = client._generate_signature(body, "1700000000000")

        digest = hashlib.sha256(("1700000000000" + body).encode()).digest()
        expected = base64.b64encode(hmac.new(b"device-secret", digest, hashlib.sha512).digest()).decode()
        assert signature == expected

    def test_unpadded_secret_accepted(self):
        client = LedgerRpcClient("d", "u", device_key="k", device_secret=SECRET.rstrip("="))

        assert client._generate_signature("{}", "1") == _client()._generate_signature("{}", "1")

    def test_missing_secret_refuses_to_sign(self):
        client = LedgerRpcClient("d", "u", device_key="k")

        with pytest.raises(ConfigurationError):
            client._generate_signature("{}", "1")


class TestDecoding:
    @pytest.mark.asyncio
    async def test_account_info_decoded(self):
        client = _client()
        client._call = AsyncMock(
            return_value={"value": {"owner": "Program111", "data": [base64.b64encode(b"\x01\x02").decode(), "base64"]}}
        )

        info = await client.get_account_info("session-1")

        assert info.owner == "Program111"
        assert info.data == b"\x01\x02"

    @pytest.mark.asyncio
    async def test_missing_account_is_none(self):
        client = _client()
        client._call = AsyncMock(return_value={"context": {"slot": 1}, "value": None})

        assert await client.get_account_info("session-1") is None

    @pytest.mark.asyncio
    async def test_transaction_receipt(self):
        client = _client()
        client._call = AsyncMock(
            return_value={"slot": 42, "meta": {"err": {"InstructionError": [0, {"Custom": 6003}]}, "logMessages": ["a"]}}
        )

        receipt = await client.get_transaction("sig")

        assert receipt.succeeded is False
        assert receipt.logs == ["a"]
        assert receipt.slot == 42

    @pytest.mark.asyncio
    async def test_submit_is_signed_and_returns_signature(self):
        client = _client()
        client._call = AsyncMock(return_value="sig-1")

        signature = await client.submit(Instruction(name="commit_session", accounts={"session": "s"}))

        assert signature == "sig-1"
        method, params = client._call.call_args.args
        assert method == "submitInstruction"
        assert params["instruction"] == "commit_session"
        assert client._call.call_args.kwargs == {"signed": True}

    @pytest.mark.asyncio
    async def test_submit_without_signature_is_transient(self):
        client = _client()
        client._call = AsyncMock(return_value=None)

        with pytest.raises(TransientIOError):
            await client.submit(Instruction(name="commit_session"))


class TestConfirm:
    @pytest.mark.asyncio
    async def test_polls_until_confirmed(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        client = _client(confirm_poll_interval_seconds=0.5, sleep=fake_sleep)
        client._call = AsyncMock(
            side_effect=[
                {"value": [None]},
                {"value": [{"confirmationStatus": "processed"}]},
                {"value": [{"confirmationStatus": "confirmed"}]},
            ]
        )

        await client.confirm("sig")

        assert sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_times_out_as_transient(self):
        client = _client(confirm_timeout_seconds=0)
        client._call = AsyncMock(return_value={"value": [None]})

        with pytest.raises(TransientIOError, match="not confirmed"):
            await client.confirm("sig")


class TestTransport:
    @pytest.mark.asyncio
    async def test_signed_call_sends_auth_headers(self):
        session_ctx, session = _http(payload={"jsonrpc": "2.0", "id": 1, "result": "sig-9"})
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            result = await _client()._call("submitInstruction", {"instruction": "x"}, signed=True)

        assert result == "sig-9"
        headers = session.post.call_args.kwargs["headers"]
        assert headers["X-Device-Key"] == "device-1"
        assert headers["X-Nonce"].isdigit()
        assert headers["X-Signature"]
        body = json.loads(session.post.call_args.kwargs["data"])
        assert body["method"] == "submitInstruction"

    @pytest.mark.asyncio
    async def test_reads_are_unsigned(self):
        session_ctx, session = _http(payload={"result": {"value": None}})
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            await _client().get_account_info("session-1")

        assert "X-Signature" not in session.post.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self):
        session_ctx, _ = _http(status=503, text="unavailable")
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(TransientIOError, match="HTTP 503"):
                await _client()._call("getAccountInfo", [])

    @pytest.mark.asyncio
    async def test_program_error_maps_to_authorization_error(self):
        payload = {"error": {"code": -32002, "message": "simulation failed", "data": {"err": {"Custom": 6003}}}}
        session_ctx, _ = _http(payload=payload)
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(ExposureLimitExceeded):
                await _client()._call("submitInstruction", {}, signed=True)

    @pytest.mark.asyncio
    async def test_other_rpc_error_is_transient(self):
        session_ctx, _ = _http(payload={"error": {"code": -32005, "message": "node is behind"}})
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(TransientIOError, match="node is behind"):
                await _client()._call("getAccountInfo", [])

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        session_ctx, session = _http()
        session.post.side_effect = aiohttp.ClientConnectionError("connection refused")
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(TransientIOError, match="connection refused"):
                await _client()._call("getAccountInfo", [])

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        session_ctx, session = _http()
        session.post.side_effect = asyncio.TimeoutError()
        connector_patch, session_patch = _patched("rpc_client", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(TransientIOError, match="TimeoutError"):
                await _client()._call("getAccountInfo", [])


class TestPositionOracle:
    def test_payload_parsed(self):
        snap = snapshot_from_payload(
            {"activeBin": 8400, "positionMinBin": 8380, "positionMaxBin": 8420, "feeX": "1200", "feeY": None}
        )

        assert (snap.range_low, snap.range_high, snap.market_pointer) == (8380, 8420, 8400)
        assert (snap.fee_x, snap.fee_y) == (1200, 0)

    @pytest.mark.parametrize(
        "payload",
        [
            {"positionMinBin": 1, "positionMaxBin": 2},
            {"activeBin": "x", "positionMinBin": 1, "positionMaxBin": 2},
            {"activeBin": 1, "positionMinBin": 5, "positionMaxBin": 2},
        ],
    )
    def test_malformed_payload(self, payload):
        with pytest.raises(PositionNotFoundError):
            snapshot_from_payload(payload)

    @pytest.mark.asyncio
    async def test_read_position(self):
        session_ctx, session = _http(payload={"activeBin": 5, "positionMinBin": 1, "positionMaxBin": 9})
        connector_patch, session_patch = _patched("oracle", session_ctx)

        with connector_patch, session_patch:
            snap = await HttpPositionOracle("https://oracle.example", "pool-1", "pos-1").read_position()

        assert snap.market_pointer == 5
        assert session.get.call_args.kwargs["params"] == {"pool": "pool-1", "position": "pos-1"}

    @pytest.mark.asyncio
    async def test_not_found(self):
        session_ctx, _ = _http(status=404)
        connector_patch, session_patch = _patched("oracle", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(PositionNotFoundError):
                await HttpPositionOracle("https://oracle.example", "pool-1", "pos-1").read_position()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        session_ctx, _ = _http(status=500, text="boom")
        connector_patch, session_patch = _patched("oracle", session_ctx)

        with connector_patch, session_patch:
            with pytest.raises(TransientIOError):
                await HttpPositionOracle("https://oracle.example", "pool-1", "pos-1").read_position()
