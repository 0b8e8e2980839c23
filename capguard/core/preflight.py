"""Pre-flight checks run before any supervision loop starts."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from .devices.probe import DeviceProbe, HealthState
from .errors import PreflightFailed
from .logging_utils import get_module_logger
from .loopback import LoopbackManager
from .settings import CaptureSettings

logger = get_module_logger("Preflight")

Which = Callable[[str], Optional[str]]


@dataclass
class PreflightReport:
    device_state: Optional[HealthState] = None
    loopback_ready: bool = False
    warnings: List[str] = field(default_factory=list)


async def run_preflight(
    settings: CaptureSettings,
    *,
    probe: Optional[DeviceProbe] = None,
    loopback: Optional[LoopbackManager] = None,
    which: Which = shutil.which,
) -> PreflightReport:
    """Verify directories, tools, the device and the loopback sink.

    Raises:
        PreflightFailed: when something required is missing. An unresponsive
            device is only a warning; the health monitor will repair it.
    """
    logger.info("Running pre-flight checks...")
    report = PreflightReport()

    basedir = Path(settings.basedir)
    if not basedir.is_dir():
        raise PreflightFailed(
            f"Project directory not found: {basedir}",
            ["Specify the correct path with: --basedir /path/to/project"],
        )

    if which(settings.consumer_command) is None:
        raise PreflightFailed(
            f"{settings.consumer_command} not found on PATH",
            [f"Install {settings.consumer_command} or set consumer_command in config.txt"],
        )

    if settings.require_device:
        if not settings.device:
            raise PreflightFailed(
                "No capture device configured",
                ["Pass --device /dev/videoN (and --vidpid vvvv:pppp)", "or run with --no-device-required"],
            )
        if which("v4l2-ctl") is None:
            raise PreflightFailed("v4l2-ctl not found on PATH", ["Install it with: sudo apt install v4l-utils"])

    if settings.device:
        probe = probe or DeviceProbe(timeout=settings.probe_timeout)
        report.device_state = await probe.probe(settings.device)
        if report.device_state == HealthState.ABSENT and settings.require_device:
            raise PreflightFailed(
                f"Capture device {settings.device} not found",
                ["lsusb (device enumerated?)", "dmesg (driver errors?)", "or run with --no-device-required"],
            )
        if report.device_state == HealthState.HEALTHY:
            logger.ok("USB device %s is healthy", settings.device)
        else:
            message = f"USB device {settings.device} may be inaccessible ({probe.last_detail}). Continuing anyway..."
            report.warnings.append(message)
            logger.warning(message)
            logger.info("If connection issues persist, check: lsusb (device enumerated?), dmesg (driver errors?)")

    if settings.use_loopback:
        if settings.bridge_enabled() and not settings.bridge_command and not settings.bridge_script.is_file():
            raise PreflightFailed(
                f"Bridge script not found at {settings.bridge_script}",
                ["Check --basedir, or set bridge_command in config.txt"],
            )
        if loopback is not None:
            report.loopback_ready = await loopback.ensure()
            if not report.loopback_ready:
                raise PreflightFailed(
                    "Cannot continue without v4l2loopback",
                    ["Install v4l2loopback-dkms", "or run with --no-loopback"],
                )

    logger.ok("Pre-flight checks complete")
    return report


__all__ = ["PreflightReport", "run_preflight"]
