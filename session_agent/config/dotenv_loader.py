"""
Explicit dotenv loader for the agent process.

Rules:
- In production (`ENVIRONMENT=prod`, the default) nothing is loaded; secrets
  such as DEVICE_SECRET and WS_SECRET must come from the real environment.
- Otherwise `.env` is loaded first without overriding existing variables, then
  `.env.local` with override, so a developer's local file wins.

Called from `cli.main()` before any Config is built, so values from the files
feed `${VAR}` expansion and nested overrides.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

_REPO_ROOT = Path(__file__).resolve().parent.parent.parent


def is_production(environment: str | None = None) -> bool:
    value = environment if environment is not None else os.getenv("ENVIRONMENT", "prod")
    return (value or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None, environment: str | None = None) -> list[Path]:
    """Load `.env` / `.env.local` outside production. Returns the files actually loaded."""
    if is_production(environment):
        return []

    root = repo_root or _REPO_ROOT
    loaded: list[Path] = []
    for filename, override in ((".env", False), (".env.local", True)):
        path = root / filename
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
