"""``capguard simulate-disconnect`` - fake a USB unplug for recovery testing.

Toggles the device's sysfs ``authorized`` flag: the kernel drops the device
when it is cleared and re-enumerates it when it is set again.
"""

import argparse
import asyncio
from typing import Optional

from capguard.cli.common import add_logging_arguments, setup_cli_logging, vidpid_arg
from capguard.core.devices.identity import DeviceIdentity
from capguard.core.devices.usb_sysfs import UsbSysfs
from capguard.core.errors import CapguardError
from capguard.core.hardware.controller import HardwareController, LinuxHardwareController
from capguard.core.logging_utils import get_module_logger
from capguard.core.paths import LOGS_DIR
from capguard.core.system_commands import CommandRunner


logger = get_module_logger("SimulateDisconnect")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="capguard simulate-disconnect",
        description="Deauthorize (or reauthorize) a USB device to simulate a disconnect",
    )
    parser.add_argument("--vidpid", type=vidpid_arg, required=True, help="USB vendor:product id")
    state_group = parser.add_mutually_exclusive_group()
    state_group.add_argument("--off", dest="authorized", action="store_false", default=None,
                             help="Disconnect the device")
    state_group.add_argument("--on", dest="authorized", action="store_true",
                             help="Reconnect the device")
    parser.add_argument(
        "--hold",
        type=float,
        default=None,
        help="Disconnect, wait this many seconds, then reconnect",
    )
    add_logging_arguments(parser)
    return parser.parse_args(argv)


async def simulate(
    hardware: HardwareController,
    identity: DeviceIdentity,
    authorized: Optional[bool] = None,
    hold: Optional[float] = None,
) -> bool:
    """Apply the requested authorization change and return the final state."""
    if hold is not None:
        await hardware.set_authorized(identity, False)
        logger.info("%s disconnected; reconnecting in %.1fs", identity.describe(), hold)
        await asyncio.sleep(hold)
        return await hardware.set_authorized(identity, True)
    return await hardware.set_authorized(identity, authorized)


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    setup_cli_logging(args, args.log_dir or LOGS_DIR, "simulate")

    sysfs = UsbSysfs()
    identity = DeviceIdentity.resolve(None, args.vidpid, sysfs)
    hardware = LinuxHardwareController(sysfs, CommandRunner())
    try:
        authorized = await simulate(hardware, identity, args.authorized, args.hold)
    except (CapguardError, OSError) as exc:
        logger.error("%s", exc)
        return 1

    logger.info("%s is now %s", identity.describe(), "connected" if authorized else "disconnected")
    return 0


def run(argv: Optional[list[str]] = None) -> int:
    return asyncio.run(main(argv))
