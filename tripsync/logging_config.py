"""Application-wide logging configuration utilities."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from tripsync import app_paths

_LOG_PATH: Optional[Path] = None


def configure_logging(level: int = logging.INFO, *, log_path: Optional[Path] = None) -> Path:
    """Configure logging to write to the TripSheet log file.

    Parameters
    ----------
    level:
        The minimum logging level for the root logger. ``logging.INFO`` is used
        by default which records sync progress, header repairs and skipped
        lookups without logging every cell.
    log_path:
        Optional override for the log destination, mainly used by tests.

    Returns
    -------
    pathlib.Path
        The path to the log file.
    """

    global _LOG_PATH

    if _LOG_PATH is not None and log_path is None:
        return _LOG_PATH

    target = Path(log_path) if log_path is not None else app_paths.logs_path("tripsync.log")
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        target.touch(exist_ok=True)
    except OSError:
        pass

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.setLevel(level)
    else:
        root_logger.setLevel(min(root_logger.level, level))

    already_configured = any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(target.resolve())
        for handler in root_logger.handlers
    )
    if not already_configured:
        file_handler = logging.FileHandler(target, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    _LOG_PATH = target
    root_logger.debug("Logging configured. Writing to %s", target)
    return target
