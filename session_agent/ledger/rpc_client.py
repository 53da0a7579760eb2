"""
JSON-RPC client for the durable ledger and the execution context.

One instance per endpoint. Reads use standard account / signature / transaction
queries; writes go through the gateway's `submitInstruction` method and are
authenticated with the device key:

    X-Device-Key: <device key id>
    X-Nonce:      <milliseconds since epoch>
    X-Signature:  base64(HMAC-SHA512(b64decode(secret), SHA256(nonce + body)))

Every network, HTTP or JSON-RPC failure surfaces as TransientIOError, except
JSON-RPC errors carrying a program error code, which raise the matching
AuthorizationError. Nothing here retries a signed submission.
"""
import asyncio
import base64
import hashlib
import hmac
import itertools
import json
import ssl
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import certifi

from session_agent.domain.models import AccountInfo, Instruction, TxReceipt
from session_agent.exceptions import ConfigurationError, TransientIOError
from session_agent.ledger.receipts import authorization_error_for
from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)

_CONFIRMED_STATUSES = ("confirmed", "finalized")


class LedgerRpcClient:
    """JSON-RPC 2.0 client for one execution surface."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        device_key: str,
        device_secret: Optional[str] = None,
        commitment: str = "confirmed",
        request_timeout_seconds: float = 30.0,
        confirm_timeout_seconds: float = 30.0,
        confirm_poll_interval_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.url = url
        self.device_key = device_key
        self._device_secret = device_secret
        self.commitment = commitment
        self.request_timeout_seconds = request_timeout_seconds
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.confirm_poll_interval_seconds = confirm_poll_interval_seconds
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._ssl_context: Optional[ssl.SSLContext] = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    # -- Auth --

    def _generate_signature(self, body: str, nonce: str) -> str:
        if not self._device_secret:
            raise ConfigurationError(f"{self.name}: device secret not configured; cannot sign submissions")
        secret = self._device_secret.strip()
        padding = len(secret) % 4
        if padding:
            secret += "=" * (4 - padding)
        digest = hashlib.sha256((nonce + body).encode("utf-8")).digest()
        signature = hmac.new(base64.b64decode(secret), digest, hashlib.sha512).digest()
        return base64.b64encode(signature).decode("utf-8")

    def _auth_headers(self, body: str) -> Dict[str, str]:
        nonce = str(int(time.time() * 1000))
        return {
            "X-Device-Key": self.device_key,
            "X-Nonce": nonce,
            "X-Signature": self._generate_signature(body, nonce),
        }

    # -- Transport --

    async def _call(self, method: str, params: Any, *, signed: bool = False) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        headers = {"Content-Type": "application/json"}
        if signed:
            headers.update(self._auth_headers(body))

        try:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            timeout = aiohttp.ClientTimeout(total=self.request_timeout_seconds)
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.post(self.url, data=body, headers=headers) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise TransientIOError(
                            f"{self.name} RPC {method} HTTP {response.status}: {error_text[:200]}"
                        )
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"{self.name} RPC {method} failed: {str(e) or type(e).__name__}") from e

        if not isinstance(data, dict):
            raise TransientIOError(f"{self.name} RPC {method}: malformed response")

        error = data.get("error")
        if error:
            error_cls = authorization_error_for(error.get("data") if isinstance(error, dict) else None)
            if error_cls is not None:
                raise error_cls()
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise TransientIOError(f"{self.name} RPC {method} error: {message}")

        return data.get("result")

    # -- Reads --

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        result = await self._call(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}]
        )
        value = (result or {}).get("value")
        if not value:
            return None
        raw = value.get("data") or ["", "base64"]
        encoded = raw[0] if isinstance(raw, list) else raw
        return AccountInfo(address=address, owner=str(value.get("owner", "")), data=base64.b64decode(encoded))

    async def get_transaction(self, signature: str) -> Optional[TxReceipt]:
        result = await self._call(
            "getTransaction",
            [signature, {"commitment": self.commitment, "maxSupportedTransactionVersion": 0, "encoding": "json"}],
        )
        if not result:
            return None
        meta = result.get("meta") or {}
        logs: List[str] = meta.get("logMessages") or []
        return TxReceipt(signature=signature, err=meta.get("err"), logs=list(logs), slot=result.get("slot"))

    # -- Writes --

    async def submit(self, instruction: Instruction) -> str:
        params = {
            "instruction": instruction.name,
            "args": instruction.args,
            "accounts": instruction.accounts,
            "signer": self.device_key,
            "skipPreflight": True,
        }
        signature = await self._call("submitInstruction", params, signed=True)
        if not isinstance(signature, str) or not signature:
            raise TransientIOError(f"{self.name} submitInstruction returned no signature")
        logger.info("Instruction submitted", endpoint=self.name, operation=instruction.name, signature=signature)
        return signature

    async def confirm(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout_seconds
        while True:
            result = await self._call(
                "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
            )
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]
            if status and status.get("confirmationStatus") in _CONFIRMED_STATUSES:
                return
            if time.monotonic() >= deadline:
                raise TransientIOError(
                    f"{self.name}: transaction {signature} not confirmed within {self.confirm_timeout_seconds}s"
                )
            await self._sleep(self.confirm_poll_interval_seconds)
