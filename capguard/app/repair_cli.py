"""``capguard repair`` - run the repair ladder once against one device."""

import argparse
import asyncio
from typing import Optional

from capguard.cli.common import add_device_arguments, add_logging_arguments, log_preflight_failure, setup_cli_logging
from capguard.core.devices.identity import DeviceIdentity
from capguard.core.devices.usb_sysfs import UsbSysfs
from capguard.core.errors import PreflightFailed
from capguard.core.hardware.controller import LinuxHardwareController
from capguard.core.logging_utils import get_module_logger
from capguard.core.paths import LOGS_DIR
from capguard.core.repair import RepairController, RepairReport, build_plan
from capguard.core.services import SystemdService
from capguard.core.settings import CaptureSettings
from capguard.core.system_commands import CommandRunner


logger = get_module_logger("RepairCLI")

KERNEL_LOG_LINES = 20


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="capguard repair",
        description="Reset, rebind and optionally power cycle a hung USB capture device",
    )
    add_device_arguments(parser)
    parser.add_argument(
        "--escalate",
        action="store_true",
        help="Include the hub power cycle step (needs --hub and uhubctl)",
    )
    parser.add_argument(
        "--no-restart",
        dest="restart_services",
        action="store_false",
        help="Do not restart the capture services afterwards",
    )
    parser.add_argument(
        "--unit",
        dest="units",
        action="append",
        default=None,
        help="systemd unit to stop before and restart after repair (repeatable)",
    )
    add_logging_arguments(parser)

    args = parser.parse_args(argv)
    if not args.vidpid and not args.device:
        parser.error("one of --vidpid or --device is required")
    return args


async def kernel_log_tail(runner: CommandRunner, lines: int = KERNEL_LOG_LINES) -> list[str]:
    result = await runner.run(["dmesg"], privileged=True)
    if not result.ok:
        return [f"(dmesg unavailable: {result.message})"]
    return result.stdout.splitlines()[-lines:]


def print_report(report: RepairReport, kernel_lines: list[str]) -> None:
    for line in report.lines():
        print(line)
    print("")
    print(f"Last {len(kernel_lines)} kernel log lines:")
    for line in kernel_lines:
        print(f"  {line}")


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = CaptureSettings.load(
            {"device": args.device, "vidpid": args.vidpid, "hub_port": args.hub_port}
        )
    except PreflightFailed as exc:
        log_preflight_failure(logger, exc)
        return 2
    setup_cli_logging(args, args.log_dir or LOGS_DIR, "repair")

    runner = CommandRunner(use_sudo=settings.use_sudo)
    sysfs = UsbSysfs()
    identity = DeviceIdentity.resolve(settings.device, settings.vidpid, sysfs)
    if not identity.has_hardware_id and not args.restart_services:
        logger.error("Could not determine the vendor:product id for %s; nothing to repair", identity.describe())
        return 2

    units = args.units if args.units is not None else settings.units()
    services = [SystemdService(unit, runner) for unit in units] if args.restart_services else []

    for service in services:
        if await service.is_active():
            await service.stop()

    hardware = LinuxHardwareController(
        sysfs,
        runner,
        rebind_pause=settings.rebind_pause,
        hub_off_pause=settings.hub_off_pause,
    )
    controller = RepairController(hardware, services)
    plan = build_plan(
        identity,
        escalate=args.escalate,
        hub_port=settings.hub_port,
        restart_services=args.restart_services,
    )
    report = await controller.run(plan)

    print_report(report, await kernel_log_tail(runner))
    return 0 if report.succeeded else 1


def run(argv: Optional[list[str]] = None) -> int:
    return asyncio.run(main(argv))
