"""Typed configuration for a supervision session.

Values are layered, lowest precedence first: dataclass defaults, the project
``config.txt``, ``/etc/default/usb-capture``, the process environment and
finally command-line flags.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from .config_manager import get_config_manager
from .devices.identity import parse_vidpid
from .errors import PreflightFailed
from .logging_utils import get_module_logger
from .paths import CONFIG_PATH, CONSUMER_LOG_DIR, LOGS_DIR, PROJECT_ROOT, STATE_DIR, SYSTEM_ENV_FILE

logger = get_module_logger("Settings")

# Installer environment file / process environment -> settings field
ENV_KEY_MAP: Dict[str, str] = {
    "USB_CAPTURE_VIDEO": "device",
    "USB_CAPTURE_VIDPID": "vidpid",
    "USB_CAPTURE_HUB": "hub_port",
    "USB_CAPTURE_RES": "resolution",
    "USB_CAPTURE_FPS": "fps",
    "USB_CAPTURE_FORMAT": "input_format",
    "USB_CAPTURE_HDR_MODE": "hdr_mode",
    "CAPGUARD_STATE_DIR": "state_dir",
    "CAPGUARD_LOG_DIR": "log_dir",
}

_OPTIONAL_STR_FIELDS = {"device", "vidpid", "hub_port", "stream_stop_marker"}
_LIST_FIELDS = {"consumer_args", "bridge_command"}
_PATH_FIELDS = {"basedir", "state_dir", "log_dir", "consumer_log_dir"}


@dataclass(frozen=True)
class RecoveryPolicy:
    """Fixed intervals and thresholds shared by every loop.

    ``max_repair_attempts`` is the single bound on consecutive repairs: the
    health monitor escalates to the full ladder once its counter exceeds it.
    """

    max_repair_attempts: int = 3
    check_interval: float = 2.0
    escalation_cooldown: float = 30.0
    crash_threshold: int = 3
    recovery_delay: float = 30.0


@dataclass
class CaptureSettings:
    # Device
    device: Optional[str] = None
    vidpid: Optional[str] = None
    hub_port: Optional[str] = None
    require_device: bool = True
    basedir: Path = PROJECT_ROOT

    # Loopback sink
    use_loopback: bool = True
    loopback_device: str = "/dev/video10"
    loopback_nr: int = 10
    loopback_label: str = "USB_Capture_Loop"
    loopback_max_width: int = 3840
    loopback_max_height: int = 2160

    # Bridging process
    bridge_command: list[str] = field(default_factory=list)
    resolution: str = "3840x2160"
    fps: int = 30
    input_format: str = "NV12"
    hdr_mode: int = 2
    bridge_grace_period: float = 3.0
    bridge_poll_interval: float = 5.0
    bridge_restart_backoff: float = 2.0
    bridge_stop_timeout: float = 2.0

    # Device health
    check_interval: float = 2.0
    probe_timeout: float = 5.0
    max_repair_attempts: int = 3
    escalation_cooldown: float = 30.0
    rebind_pause: float = 1.0
    hub_off_pause: float = 2.0

    # Consumer
    consumer_command: str = "obs"
    consumer_args: list[str] = field(default_factory=list)
    crash_threshold: int = 3
    recovery_delay: float = 30.0
    auto_resume: bool = True
    resume_directive: str = "--startstreaming"
    consumer_log_dir: Path = CONSUMER_LOG_DIR
    stream_start_marker: str = "==== Streaming Start"
    stream_stop_marker: Optional[str] = None
    log_tail_lines: int = 400

    # Dependent services
    bridge_unit: str = "usb-capture-ffmpeg.service"
    monitor_unit: str = "usb-capture-monitor.service"
    manage_units: bool = False
    use_sudo: bool = True

    # Runtime locations and logging
    state_dir: Path = STATE_DIR
    log_dir: Path = LOGS_DIR
    log_level: str = "info"
    console_output: bool = True

    # ------------------------------------------------------------------
    # Derived values

    @property
    def policy(self) -> RecoveryPolicy:
        return RecoveryPolicy(
            max_repair_attempts=self.max_repair_attempts,
            check_interval=self.check_interval,
            escalation_cooldown=self.escalation_cooldown,
            crash_threshold=self.crash_threshold,
            recovery_delay=self.recovery_delay,
        )

    @property
    def bridge_script(self) -> Path:
        return Path(self.basedir) / "ffmpeg" / "feed.sh"

    def resolved_bridge_command(self) -> list[str]:
        if self.bridge_command:
            return list(self.bridge_command)
        return ["bash", str(self.bridge_script)]

    def bridge_enabled(self) -> bool:
        return self.use_loopback and bool(self.device)

    def units(self) -> list[str]:
        return [unit for unit in (self.bridge_unit, self.monitor_unit) if unit]

    # ------------------------------------------------------------------
    # Loading

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], base: Optional["CaptureSettings"] = None) -> "CaptureSettings":
        """Apply string (or already typed) values onto ``base``."""
        settings = base or cls()
        defaults = cls()
        updates: Dict[str, Any] = {}
        known = {f.name for f in fields(cls)}

        for key, raw in values.items():
            name = key if key in known else ENV_KEY_MAP.get(key)
            if name is None:
                if key.islower():
                    logger.debug("Ignoring unknown config key '%s'", key)
                continue
            if raw is None:
                continue
            updates[name] = _coerce(name, raw, getattr(defaults, name))

        return replace(settings, **updates) if updates else settings

    @classmethod
    def load(
        cls,
        cli_overrides: Optional[Mapping[str, Any]] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
        config_paths: Sequence[Path] = (CONFIG_PATH, SYSTEM_ENV_FILE),
    ) -> "CaptureSettings":
        config_manager = get_config_manager()
        settings = cls()

        for path in config_paths:
            values = config_manager.read_config(Path(path))
            if values:
                logger.debug("Applying %d config values from %s", len(values), path)
                settings = cls.from_mapping(values, settings)

        environ = os.environ if env is None else env
        env_values = {key: environ[key] for key in ENV_KEY_MAP if key in environ}
        if env_values:
            settings = cls.from_mapping(env_values, settings)

        if cli_overrides:
            settings = cls.from_mapping(
                {key: value for key, value in cli_overrides.items() if value is not None},
                settings,
            )

        return settings


def _coerce_vidpid(raw: Any) -> Optional[str]:
    text = str(raw).strip()
    if not text:
        return None
    try:
        vendor_id, product_id = parse_vidpid(text)
    except ValueError as exc:
        raise PreflightFailed(
            str(exc),
            [
                "Use the form vvvv:pppp as printed by lsusb, e.g. 3188:1000",
                "Check --vidpid, USB_CAPTURE_VIDPID (environment or /etc/default/usb-capture) and config.txt",
            ],
        ) from exc
    return f"{vendor_id}:{product_id}"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if name == "vidpid":
        return _coerce_vidpid(raw)
    if name in _LIST_FIELDS:
        if isinstance(raw, str):
            return shlex.split(raw)
        return [str(item) for item in raw]
    if name in _PATH_FIELDS:
        return Path(str(raw)).expanduser()
    if name in _OPTIONAL_STR_FIELDS:
        text = str(raw).strip()
        return text or None
    if not isinstance(raw, str):
        return raw

    config_manager = get_config_manager()
    probe = {name: raw}
    if isinstance(default, bool):
        return config_manager.get_bool(probe, name, default)
    if isinstance(default, int):
        return config_manager.get_int(probe, name, default)
    if isinstance(default, float):
        return config_manager.get_float(probe, name, default)
    return raw


__all__ = ["CaptureSettings", "RecoveryPolicy", "ENV_KEY_MAP"]
