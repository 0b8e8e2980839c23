"""Centralized path constants for capguard."""

from __future__ import annotations

import os
import time
from pathlib import Path

# Project/package roots
PACKAGE_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = PACKAGE_ROOT.parent

# Configuration
CONFIG_PATH = PROJECT_ROOT / "config.txt"
SYSTEM_ENV_FILE = Path("/etc/default/usb-capture")

# Session logs
_LOG_DIR_ENV = os.environ.get("CAPGUARD_LOG_DIR")
LOGS_DIR = Path(_LOG_DIR_ENV).expanduser() if _LOG_DIR_ENV else (Path.home() / ".cache" / "capguard")


def _default_state_dir() -> Path:
    override = os.environ.get("CAPGUARD_STATE_DIR")
    if override:
        return Path(override).expanduser()
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / "capguard"
    return Path("/tmp") / f"capguard-{os.getuid()}"


# Liveness records and the streaming-state flag
STATE_DIR = _default_state_dir()
STREAM_STATE_FILENAME = "streaming.json"

# Consumer (OBS) log directory scanned for the start-of-stream marker
CONSUMER_LOG_DIR = Path.home() / ".config" / "obs-studio" / "logs"


def session_log_file(log_dir: Path = LOGS_DIR, prefix: str = "capguard") -> Path:
    """Return a timestamped log path for a new supervision session."""
    stamp = time.strftime("%Y%m%d_%H%M%S")
    return log_dir / f"{prefix}-{stamp}.log"


def ensure_directories(*extra: Path) -> None:
    """Create necessary directories if they don't exist."""

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    STATE_DIR.mkdir(parents=True, exist_ok=True)
    for directory in extra:
        directory.mkdir(parents=True, exist_ok=True)


__all__ = [
    'PROJECT_ROOT',
    'PACKAGE_ROOT',
    'CONFIG_PATH',
    'SYSTEM_ENV_FILE',
    'LOGS_DIR',
    'STATE_DIR',
    'STREAM_STATE_FILENAME',
    'CONSUMER_LOG_DIR',
    'session_log_file',
    'ensure_directories',
]
