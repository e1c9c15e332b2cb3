"""Centralised helpers for managing TripSheet application directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("TRIPSYNC_HOME", "XDG_DATA_HOME", "LOCALAPPDATA")


def _detect_base_directory() -> Path:
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if not value:
            continue
        base = Path(value).expanduser().resolve()
        if env_var == "TRIPSYNC_HOME":
            return base
        return base / "TripSheet"
    return Path.home().resolve() / ".tripsync"


APP_DIR: Path = _detect_base_directory()
LOGS_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, LOGS_DIR):
        ensure_directory(directory)


def logs_path(*parts: str) -> Path:
    """Return a path inside :data:`LOGS_DIR`."""

    ensure_app_structure()
    return LOGS_DIR.joinpath(*parts)


__all__ = [
    "APP_DIR",
    "LOGS_DIR",
    "ensure_app_structure",
    "ensure_directory",
    "logs_path",
]
