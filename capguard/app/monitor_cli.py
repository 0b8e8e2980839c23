"""``capguard monitor`` - the device health monitor as a standalone service.

Used by ``usb-capture-monitor.service``: the bridging process then runs as its
own systemd unit and is restarted through systemctl instead of in-process.
"""

import argparse
import asyncio
import signal
from typing import Optional

from capguard.cli.common import (
    add_device_arguments,
    add_logging_arguments,
    install_exception_handlers,
    log_preflight_failure,
    log_session_shutdown,
    log_session_startup,
    setup_cli_logging,
)
from capguard.core.devices.identity import DeviceIdentity
from capguard.core.devices.probe import DeviceProbe
from capguard.core.devices.usb_sysfs import UsbSysfs
from capguard.core.errors import PreflightFailed
from capguard.core.hardware.controller import LinuxHardwareController
from capguard.core.health_monitor import DeviceHealthMonitor
from capguard.core.logging_utils import get_module_logger
from capguard.core.process_registry import ProcessRegistry
from capguard.core.repair import RepairController
from capguard.core.services import SystemdService
from capguard.core.settings import CaptureSettings
from capguard.core.shutdown_coordinator import get_shutdown_coordinator
from capguard.core.system_commands import CommandRunner


logger = get_module_logger("MonitorCLI")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="capguard monitor",
        description="Watch a USB capture device and repair it when it disappears or hangs",
    )
    add_device_arguments(parser)
    parser.add_argument(
        "--bridge-unit",
        type=str,
        default=None,
        help="systemd unit to stop and restart around repairs (default: from config)",
    )
    add_logging_arguments(parser, default_log_level=None, default_console_output=None)
    args = parser.parse_args(argv)
    return args


def build_monitor(
    settings: CaptureSettings,
    runner: CommandRunner,
    registry: Optional[ProcessRegistry] = None,
) -> DeviceHealthMonitor:
    sysfs = UsbSysfs()
    identity = DeviceIdentity.resolve(settings.device, settings.vidpid, sysfs)
    services = [SystemdService(settings.bridge_unit, runner)] if settings.bridge_unit else []
    hardware = LinuxHardwareController(
        sysfs,
        runner,
        rebind_pause=settings.rebind_pause,
        hub_off_pause=settings.hub_off_pause,
    )
    return DeviceHealthMonitor(
        identity,
        DeviceProbe(runner, timeout=settings.probe_timeout),
        RepairController(hardware, services),
        services,
        settings.policy,
        hub_port=settings.hub_port,
        registry=registry,
    )


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = CaptureSettings.load(
            {
                "device": args.device,
                "vidpid": args.vidpid,
                "hub_port": args.hub_port,
                "bridge_unit": args.bridge_unit,
                "log_level": args.log_level,
                "console_output": args.console_output,
                "log_dir": args.log_dir,
            }
        )
    except PreflightFailed as exc:
        log_preflight_failure(logger, exc)
        return 2
    if not settings.device:
        logger.error("No device given; pass --device or set USB_CAPTURE_VIDEO")
        return 2

    log_file = setup_cli_logging(settings, settings.log_dir, "monitor")
    loop = asyncio.get_running_loop()
    install_exception_handlers(logger.logger, loop)

    log_session_startup(
        logger,
        log_file,
        "capguard device monitor",
        device=settings.device,
        vidpid=settings.vidpid,
        hub=settings.hub_port,
        bridge_unit=settings.bridge_unit,
    )

    runner = CommandRunner(use_sudo=settings.use_sudo)
    registry = ProcessRegistry(settings.state_dir)
    monitor = build_monitor(settings, runner, registry)

    coordinator = get_shutdown_coordinator()
    coordinator.register_cleanup(monitor.stop)

    def _on_signal(sig: int) -> None:
        logger.info("Received %s", signal.Signals(sig).name)
        asyncio.ensure_future(coordinator.initiate_shutdown(signal.Signals(sig).name))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    monitor.start()
    await coordinator.wait_for_shutdown()

    log_session_shutdown(logger, "capguard device monitor", 0)
    return 0


def run(argv: Optional[list[str]] = None) -> int:
    return asyncio.run(main(argv))
