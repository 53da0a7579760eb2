"""
Constants for the session agent.

Centralizes program ids, timing defaults and wire-level limits so they are
not scattered as magic numbers.
"""

# ============ PROGRAM IDS ============

# Program that owns Session and monitor records on the durable ledger
AGENT_PROGRAM_ID = "8reNvTG6PLT4sf4nGbT7VjZ1YqEGXzASkjcSQmQTkJPT"

# Delegation-holder program: owns the Session record while it is delegated
DELEGATION_PROGRAM_ID = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"

# ============ RPC DEFAULTS ============

DEFAULT_DURABLE_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_EXECUTION_RPC_URL = "https://devnet.magicblock.app/"

DEFAULT_DURABLE_EXPLORER_URL = "https://explorer.solana.com/tx/{signature}?cluster=devnet"
DEFAULT_EXECUTION_EXPLORER_URL = (
    "https://explorer.solana.com/tx/{signature}?cluster=custom&customUrl=https%3A%2F%2Fdevnet.magicblock.app%2F"
)

# ============ WORKFLOW TIMING ============

SETTLE_DELAY_SECONDS = 3.0            # wait after delegation before the execution context sees the record
RECONCILE_POLL_INTERVAL_SECONDS = 5.0
RECONCILE_MAX_POLL_ATTEMPTS = 12      # 12 x 5s = 60s before deferring to the monitor
DEFAULT_ACTION_AMOUNT = 100_000

# ============ MONITOR ============

DEFAULT_CHECK_INTERVAL_SECONDS = 30
MIN_CHECK_INTERVAL_SECONDS = 5
MAX_CHECK_INTERVAL_SECONDS = 3600
MEMORY_TAIL_LINES = 30
MEMORY_ENTRY_MAX_CHARS = 2000

# ============ PUSH CHANNEL ============

WS_PORT = 18789
WS_MAX_PAYLOAD_BYTES = 64 * 1024
WS_AUTH_TIMEOUT_SECONDS = 5.0
WS_POLICY_VIOLATION = 1008

# ============ LOGGING ============

LOG_ROTATE_BYTES = 10 * 1024 * 1024
LOG_ROTATE_BACKUPS = 5
# Third-party loggers that are chatty at INFO (per-frame / per-request lines)
QUIET_LOGGERS = ("websockets", "aiohttp.access")

# ============ SESSION ACCOUNT LAYOUT ============

ACCOUNT_DISCRIMINATOR_LEN = 8
PRINCIPAL_LEN = 32
