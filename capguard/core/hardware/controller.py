"""Hardware remediation primitives behind one capability interface.

``LinuxHardwareController`` talks to the kernel directly: the usbdevfs reset
ioctl, sysfs driver unbind/bind writes, the ``authorized`` flag, and
``uhubctl`` for per-port hub power.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple

from capguard.core.devices.identity import DeviceIdentity
from capguard.core.devices.usb_sysfs import UsbDeviceInfo, UsbSysfs
from capguard.core.errors import (
    CapguardError,
    HubCycleFailed,
    HubCycleUnavailable,
    RebindFailed,
    ResetFailed,
)
from capguard.core.logging_utils import get_module_logger
from capguard.core.system_commands import CommandRunner

logger = get_module_logger("HardwareController")

# _IO('U', 20) from linux/usbdevice_fs.h
USBDEVFS_RESET = 0x5514


def parse_hub_port(value: str) -> Tuple[str, str]:
    """Split a hub port string into the uhubctl location and port.

    Accepts ``1-1:4`` (explicit) or a sysfs bus path such as ``1-1.4``, whose
    last component is the port on the parent hub. ``1-4`` is port 4 of root
    hub ``1``.
    """
    value = value.strip()
    if ":" in value:
        hub, port = value.split(":", 1)
    elif "." in value:
        hub, port = value.rsplit(".", 1)
    elif "-" in value:
        hub, port = value.split("-", 1)
    else:
        raise ValueError(f"Invalid hub port '{value}' (expected e.g. 1-1.4 or 1-1:4)")

    if not hub or not port.isdigit():
        raise ValueError(f"Invalid hub port '{value}' (expected e.g. 1-1.4 or 1-1:4)")
    return hub, port


class HardwareController(ABC):

    @abstractmethod
    async def soft_reset(self, identity: DeviceIdentity) -> str:
        """Bus-level reset of the device. Raises ``ResetFailed``."""

    @abstractmethod
    async def rebind(self, identity: DeviceIdentity) -> str:
        """Unbind then rebind the device's driver. Raises ``RebindFailed``."""

    @abstractmethod
    async def power_cycle(self, hub_port: Optional[str]) -> str:
        """Power a hub port off and on. Raises ``HubCycleUnavailable`` or
        ``HubCycleFailed``."""

    @abstractmethod
    async def set_authorized(self, identity: DeviceIdentity, authorized: Optional[bool] = None) -> bool:
        """Set (or toggle, when None) the device's sysfs ``authorized`` flag."""


class LinuxHardwareController(HardwareController):

    def __init__(
        self,
        sysfs: Optional[UsbSysfs] = None,
        runner: Optional[CommandRunner] = None,
        rebind_pause: float = 1.0,
        hub_off_pause: float = 2.0,
    ) -> None:
        self.sysfs = sysfs or UsbSysfs()
        self.runner = runner or CommandRunner()
        self.rebind_pause = rebind_pause
        self.hub_off_pause = hub_off_pause

    # ------------------------------------------------------------------
    # Helpers

    def _lookup(self, identity: DeviceIdentity) -> Optional[UsbDeviceInfo]:
        if identity.has_hardware_id:
            return self.sysfs.find_by_vidpid(identity.vendor_id, identity.product_id)
        if identity.node_path:
            return self.sysfs.from_video_node(identity.node_path)
        return None

    async def _locate(self, identity: DeviceIdentity, error_cls: type) -> UsbDeviceInfo:
        try:
            info = await asyncio.to_thread(self._lookup, identity)
        except OSError as exc:
            raise error_cls(f"sysfs lookup for {identity.describe()} failed: {exc}") from exc
        if info is None:
            raise error_cls(f"USB device {identity.vidpid or identity.node_path} not found in sysfs")
        return info

    async def _write_sysfs(self, path: Path, value: str) -> None:
        try:
            await asyncio.to_thread(path.write_text, value)
            return
        except PermissionError:
            if os.geteuid() == 0 or not self.runner.use_sudo:
                raise
        logger.debug("Retrying %s write through sudo tee", path)
        result = await self.runner.run(["tee", str(path)], input_text=value, privileged=True)
        if not result.ok:
            raise PermissionError(f"{path}: {result.message or 'sudo tee failed'}")

    # ------------------------------------------------------------------
    # Primitives

    async def soft_reset(self, identity: DeviceIdentity) -> str:
        info = await self._locate(identity, ResetFailed)
        usbfs_path = info.usbfs_path(self.sysfs.usbfs_root)
        if usbfs_path is None:
            raise ResetFailed(f"bus/device number unknown for {info.busid}")

        def _reset() -> None:
            fd = os.open(usbfs_path, os.O_WRONLY)
            try:
                fcntl.ioctl(fd, USBDEVFS_RESET, 0)
            finally:
                os.close(fd)

        try:
            await asyncio.to_thread(_reset)
        except OSError as exc:
            raise ResetFailed(f"USBDEVFS_RESET on {usbfs_path} failed: {exc}") from exc
        return f"reset {usbfs_path}"

    async def rebind(self, identity: DeviceIdentity) -> str:
        info = await self._locate(identity, RebindFailed)
        try:
            driver = await asyncio.to_thread(info.driver_path)
        except (OSError, RuntimeError) as exc:
            raise RebindFailed(f"driver link of {info.busid} unreadable: {exc}") from exc
        if driver is None:
            raise RebindFailed(f"no driver bound to {info.busid}")

        try:
            logger.info("Unbinding %s from %s", info.busid, driver.name)
            await self._write_sysfs(driver / "unbind", info.busid)
            await asyncio.sleep(self.rebind_pause)
            await self._write_sysfs(driver / "bind", info.busid)
        except OSError as exc:
            raise RebindFailed(f"{driver.name} rebind of {info.busid} failed: {exc}") from exc
        return f"rebound {info.busid} to {driver.name}"

    async def power_cycle(self, hub_port: Optional[str]) -> str:
        if not hub_port:
            raise HubCycleUnavailable("no hub port configured")
        if self.runner.which("uhubctl") is None:
            raise HubCycleUnavailable("uhubctl not installed")
        try:
            hub, port = parse_hub_port(hub_port)
        except ValueError as exc:
            raise HubCycleUnavailable(str(exc)) from exc

        off = await self.runner.run(["uhubctl", "-l", hub, "-p", port, "-a", "0"], privileged=True)
        await asyncio.sleep(self.hub_off_pause)
        on = await self.runner.run(["uhubctl", "-l", hub, "-p", port, "-a", "1"], privileged=True)
        if not on.ok:
            raise HubCycleFailed(f"uhubctl could not power on {hub} port {port}: {on.message}")
        if not off.ok:
            raise HubCycleFailed(f"uhubctl could not power off {hub} port {port}: {off.message}")
        return f"power cycled hub {hub} port {port}"

    async def set_authorized(self, identity: DeviceIdentity, authorized: Optional[bool] = None) -> bool:
        info = await self._locate(identity, CapguardError)
        flag = info.sys_path / "authorized"
        if authorized is None:
            current = (await asyncio.to_thread(flag.read_text)).strip()
            authorized = current != "1"
        await self._write_sysfs(flag, "1" if authorized else "0")
        return authorized


__all__ = [
    "HardwareController",
    "LinuxHardwareController",
    "USBDEVFS_RESET",
    "parse_hub_port",
]
