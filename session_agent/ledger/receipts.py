"""
Transaction verification helpers shared by the orchestrator and the monitor.

Confirmation only proves that a transaction was included; an instruction can
still have failed. Every signed submission therefore goes through
`submit_and_verify`, which inspects the receipt and raises when the
instruction failed:

- a program error code that maps to an authorization rule raises the
  matching AuthorizationError subclass;
- any other receipt error raises SilentInstructionFailure.
"""
from typing import Any, Optional, Type

from session_agent.domain.models import Instruction, TxReceipt
from session_agent.domain.protocols import LedgerEndpoint
from session_agent.exceptions import (
    AUTHORIZATION_ERRORS_BY_CODE,
    AuthorizationError,
    SilentInstructionFailure,
)
from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)

RECEIPT_LOG_LINES = 5


def extract_custom_code(err: Any) -> Optional[int]:
    """Find a program custom error code inside a receipt error structure.

    Handles shapes like ``{"InstructionError": [0, {"Custom": 6003}]}`` and
    ``{"code": 6003}``.
    """
    if isinstance(err, dict):
        for key in ("Custom", "custom", "code"):
            value = err.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        for value in err.values():
            code = extract_custom_code(value)
            if code is not None:
                return code
    elif isinstance(err, (list, tuple)):
        for value in err:
            code = extract_custom_code(value)
            if code is not None:
                return code
    return None


def authorization_error_for(err: Any) -> Optional[Type[AuthorizationError]]:
    code = extract_custom_code(err)
    if code is None:
        return None
    return AUTHORIZATION_ERRORS_BY_CODE.get(code)


def verify_receipt(receipt: Optional[TxReceipt], signature: str, operation: str) -> None:
    """Raise if the receipt shows the instruction failed.

    A missing receipt after confirmation is treated as success; the ledger has
    already confirmed inclusion and has nothing more to report.
    """
    if receipt is None or receipt.succeeded:
        return

    logs = receipt.logs[:RECEIPT_LOG_LINES]
    error_cls = authorization_error_for(receipt.err)
    if error_cls is not None:
        logger.warning(
            "INSTRUCTION_REJECTED",
            operation=operation,
            signature=signature,
            error=error_cls.__name__,
            logs=logs,
        )
        raise error_cls(signature=signature)

    logger.error(
        "SILENT_INSTRUCTION_FAILURE",
        operation=operation,
        signature=signature,
        err=receipt.err,
        logs=logs,
    )
    message = f"{operation} TX failed: {receipt.err}"
    if logs:
        message += "\n" + "\n".join(logs)
    raise SilentInstructionFailure(message, signature=signature, err=receipt.err, logs=receipt.logs)


async def submit_and_verify(endpoint: LedgerEndpoint, instruction: Instruction) -> str:
    """Submit, wait for confirmation, then check the receipt. Returns the signature."""
    signature = await endpoint.submit(instruction)
    await endpoint.confirm(signature)
    receipt = await endpoint.get_transaction(signature)
    verify_receipt(receipt, signature, instruction.name)
    logger.debug("Instruction confirmed", endpoint=endpoint.name, operation=instruction.name, signature=signature)
    return signature
