"""
Custom exception hierarchy for the session agent.

Hierarchy:

    AgentError (base)
    ├── TransientIOError          : network/RPC failure (never retried inside a phase)
    │   └── SilentInstructionFailure : accepted for inclusion, failed at instruction level
    ├── AuthorizationError        : rejected by the ledger's own checks
    │   ├── UnauthorizedKey
    │   ├── SessionExpired
    │   ├── SessionInactive
    │   ├── StrategyNotEnabled
    │   ├── ExposureLimitExceeded
    │   ├── ArithmeticOverflow
    │   └── InvalidRange
    ├── DataError                 : missing or malformed data
    │   ├── SessionNotFoundError
    │   └── PositionNotFoundError
    └── ConfigurationError        : invalid configuration, refuse to start

Rules:
    - TransientIOError: fatal to the current phase. Do NOT retry a signed
      submission automatically; a fresh trigger is required.
    - AuthorizationError: fatal, never retried, surfaced verbatim.
    - DataError: fatal to the current phase, nothing was submitted.
    - Everything else (AttributeError, TypeError, etc.): caught only at the
      workflow / tick boundary and reported as an unexpected error.
"""
from typing import Any, Dict, List, Optional, Type


class AgentError(Exception):
    """Base exception for all session agent errors."""

    category = "agent_error"


# ============ TRANSIENT (network / RPC) ============

class TransientIOError(AgentError):
    """Network or RPC failure talking to the ledger or execution context."""

    category = "transient_io"


class SilentInstructionFailure(TransientIOError):
    """A transaction confirmed for inclusion whose instruction failed.

    Confirmation alone only proves inclusion; the receipt must be inspected.
    Treated exactly like a TransientIOError by callers.
    """

    category = "silent_instruction_failure"

    def __init__(
        self,
        message: str,
        *,
        signature: Optional[str] = None,
        err: Any = None,
        logs: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.signature = signature
        self.err = err
        self.logs = list(logs or [])


# ============ AUTHORIZATION (ledger-side rejection) ============

class AuthorizationError(AgentError):
    """Rejected by the ledger's key / expiry / strategy / exposure checks."""

    category = "authorization"
    code: Optional[int] = None

    def __init__(self, message: str = "", *, signature: Optional[str] = None):
        super().__init__(message or self.__doc__ or self.__class__.__name__)
        self.signature = signature


class SessionExpired(AuthorizationError):
    """Session has expired"""
    code = 6000


class SessionInactive(AuthorizationError):
    """Session is not active"""
    code = 6001


class UnauthorizedKey(AuthorizationError):
    """Unauthorized: signer is not the registered device key"""
    code = 6002


class ExposureLimitExceeded(AuthorizationError):
    """Action amount exceeds the session's exposure cap"""
    code = 6003


class StrategyNotEnabled(AuthorizationError):
    """Strategy not enabled for this session"""
    code = 6004


class ArithmeticOverflow(AuthorizationError):
    """Arithmetic overflow"""
    code = 6005


class InvalidRange(AuthorizationError):
    """Range low bound must be <= high bound"""
    code = 6006


AUTHORIZATION_ERRORS_BY_CODE: Dict[int, Type[AuthorizationError]] = {
    cls.code: cls
    for cls in (
        SessionExpired,
        SessionInactive,
        UnauthorizedKey,
        ExposureLimitExceeded,
        StrategyNotEnabled,
        ArithmeticOverflow,
        InvalidRange,
    )
}


# ============ DATA (missing / malformed) ============

class DataError(AgentError):
    """Missing or malformed data read from an external source."""

    category = "data"


class SessionNotFoundError(DataError):
    """The session account does not exist or cannot be decoded."""


class PositionNotFoundError(DataError):
    """The monitored position could not be read."""


# ============ CONFIGURATION ============

class ConfigurationError(AgentError):
    """Invalid configuration. Refuse to start."""

    category = "configuration"
