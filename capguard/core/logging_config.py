"""Root logging for capguard sessions.

Every line carries a timestamp and a severity tag. Besides the stdlib levels
the supervision loops use ``OK`` (a check passed, a step succeeded) and
``RECOVERY`` (a remediation is under way).
"""

from __future__ import annotations

import contextlib
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
SESSION_LOG_MAX_BYTES = 2 * 1024 * 1024
SESSION_LOG_BACKUPS = 2

OK = 21
RECOVERY = 25

logging.addLevelName(OK, "OK")
logging.addLevelName(RECOVERY, "RECOVERY")

LEVELS: dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "recovery": RECOVERY,
    "ok": OK,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_configured = False


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    try:
        return LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"Unknown log level '{level}' (choose from {', '.join(LEVELS)})") from None


def _session_handlers(console: bool, log_file: Optional[Path]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=SESSION_LOG_MAX_BYTES,
                backupCount=SESSION_LOG_BACKUPS,
                encoding="utf-8",
            )
        )
    return handlers


def configure_logging(
    level: Union[int, str] = logging.INFO,
    *,
    force: bool = False,
    console: bool = True,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """Send capguard logging to stdout and/or the per-session log file.

    A second call without ``force`` only adjusts the level; the session log
    stays the one opened first.
    """

    global _configured
    numeric_level = _coerce_level(level)
    root = logging.getLogger()

    if _configured and not force:
        root.setLevel(numeric_level)
        for handler in root.handlers:
            handler.setLevel(numeric_level)
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers = _session_handlers(console, Path(log_file) if log_file else None)
    if not handlers:
        # Nothing requested: keep warnings visible on stderr.
        handlers.append(logging.StreamHandler(sys.stderr))
        numeric_level = max(numeric_level, logging.WARNING)

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(numeric_level)

    _configured = True


__all__ = ["configure_logging", "LEVELS", "LOG_FORMAT", "LOG_DATEFMT", "OK", "RECOVERY"]
