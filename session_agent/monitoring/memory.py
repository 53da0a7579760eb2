"""
Append-only memory log.

Every monitor tick appends one human-readable summary line so that whatever
reasons about the position next (a person, or a reasoning component reading
the tail) always has fresh context, including ticks that failed.

Entries are timestamped and sanitized to a single line; the file is never
rewritten.
"""
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from session_agent.constants import MEMORY_ENTRY_MAX_CHARS, MEMORY_TAIL_LINES
from session_agent.monitoring.logger import get_logger

logger = get_logger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_WHITESPACE_RUN = re.compile(r"\s+")

EMPTY_MEMORY = "(no memory yet)"


def sanitize_entry(entry: str, max_chars: int = MEMORY_ENTRY_MAX_CHARS) -> str:
    """Collapse to one line, strip control characters, cap length."""
    cleaned = _CONTROL_CHARS.sub("", entry or "")
    cleaned = _WHITESPACE_RUN.sub(" ", cleaned).strip()
    if len(cleaned) > max_chars:
        cleaned = cleaned[: max_chars - 1] + "…"
    return cleaned


class MemoryLog:
    """Append-only, line-oriented log file."""

    def __init__(self, path: str | Path, tail_lines: int = MEMORY_TAIL_LINES):
        self.path = Path(path)
        self.tail_lines = tail_lines

    def append(self, entry: str, now: Optional[datetime] = None) -> str:
        line = sanitize_entry(entry)
        if not line:
            return ""
        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        record = f"[{timestamp}] {line}"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(record + "\n")
        return record

    def lines(self) -> List[str]:
        if not self.path.exists():
            return []
        return [ln for ln in self.path.read_text(encoding="utf-8").splitlines() if ln.strip()]

    def tail(self, n: Optional[int] = None) -> str:
        lines = self.lines()
        if not lines:
            return EMPTY_MEMORY
        return "\n".join(lines[-(n or self.tail_lines):])
