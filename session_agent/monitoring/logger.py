"""
Structured logging setup for the session agent.

Every module logs through `get_logger(__name__)` with upper-case event names
(WORKFLOW_START, CHECKPOINT_DEFERRED, ...) and keyword context. Workflow ids
and tick numbers are bound with `bind_log_context` so every line emitted while
a workflow or tick runs carries them, including lines from the ledger client.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional

import structlog

from session_agent.constants import LOG_ROTATE_BACKUPS, LOG_ROTATE_BYTES, QUIET_LOGGERS

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _processors(log_format: str) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def _file_handler(log_file: str, level: int) -> RotatingFileHandler:
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=LOG_ROTATE_BYTES, backupCount=LOG_ROTATE_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure structured logging for the agent process.

    Args:
        log_level: One of DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" for machine-readable lines, anything else for console output
        log_file: Optional path; output is duplicated there with size-based rotation

    Raises:
        ValueError: If log_level is not a known level name
    """
    level_name = log_level.upper()
    if level_name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {log_level}")
    level = getattr(logging, level_name)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_processors(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        logging.root.addHandler(_file_handler(log_file, level))

    get_logger(__name__).info("Logging initialized", log_level=level_name, log_format=log_format, log_file=log_file)


def bind_log_context(**values: Any) -> None:
    structlog.contextvars.bind_contextvars(**values)


def clear_log_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger (name is typically __name__)."""
    return structlog.get_logger(name)
