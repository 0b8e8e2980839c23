"""
USB sysfs lookups - resolve capture devices to kernel bus identifiers.

Every USB device appears under /sys/bus/usb/devices as a directory named by
its bus path ("1-2", "1-2.3"). Interfaces have a colon in their name
("1-2:1.0") and root hubs are named "usbN". The device directory carries
idVendor/idProduct, busnum/devnum (used to address /dev/bus/usb/BBB/DDD),
a ``driver`` symlink (used to unbind/rebind) and the ``authorized`` flag.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from capguard.core.logging_utils import get_module_logger

logger = get_module_logger("UsbSysfs")

SYSFS_ROOT = Path("/sys")
USBFS_ROOT = Path("/dev/bus/usb")


@dataclass(frozen=True)
class UsbDeviceInfo:
    busid: str
    sys_path: Path
    vendor_id: str
    product_id: str
    busnum: Optional[int] = None
    devnum: Optional[int] = None

    @property
    def vidpid(self) -> str:
        return f"{self.vendor_id}:{self.product_id}"

    def usbfs_path(self, usbfs_root: Path = USBFS_ROOT) -> Optional[Path]:
        """Return /dev/bus/usb/BBB/DDD for the usbdevfs reset ioctl."""
        if self.busnum is None or self.devnum is None:
            return None
        return usbfs_root / f"{self.busnum:03d}" / f"{self.devnum:03d}"

    def driver_path(self) -> Optional[Path]:
        """Resolved driver directory, or None when no driver is bound."""
        link = self.sys_path / "driver"
        if not link.exists():
            return None
        return link.resolve()


def _read_attr(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return None


def _read_int(path: Path) -> Optional[int]:
    value = _read_attr(path)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class UsbSysfs:
    """Read-only view of the USB device tree rooted at ``sysfs_root``."""

    def __init__(self, sysfs_root: Path = SYSFS_ROOT, usbfs_root: Path = USBFS_ROOT) -> None:
        self.sysfs_root = Path(sysfs_root)
        self.usbfs_root = Path(usbfs_root)

    @property
    def devices_dir(self) -> Path:
        return self.sysfs_root / "bus" / "usb" / "devices"

    def _info_for(self, sys_path: Path) -> Optional[UsbDeviceInfo]:
        vendor = _read_attr(sys_path / "idVendor")
        product = _read_attr(sys_path / "idProduct")
        if not vendor or not product:
            return None
        return UsbDeviceInfo(
            busid=sys_path.name,
            sys_path=sys_path,
            vendor_id=vendor.lower(),
            product_id=product.lower(),
            busnum=_read_int(sys_path / "busnum"),
            devnum=_read_int(sys_path / "devnum"),
        )

    def iter_devices(self) -> Iterator[UsbDeviceInfo]:
        if not self.devices_dir.is_dir():
            return
        for entry in sorted(self.devices_dir.iterdir(), key=lambda p: p.name):
            if ":" in entry.name:
                continue
            info = self._info_for(entry)
            if info is not None:
                yield info

    def find_by_vidpid(self, vendor_id: str, product_id: str) -> Optional[UsbDeviceInfo]:
        """First device matching vendor:product, in bus-path order."""
        vendor_id = vendor_id.lower()
        product_id = product_id.lower()
        for info in self.iter_devices():
            if info.vendor_id == vendor_id and info.product_id == product_id:
                return info
        logger.debug("No USB device found for %s:%s", vendor_id, product_id)
        return None

    def find_by_busid(self, busid: str) -> Optional[UsbDeviceInfo]:
        path = self.devices_dir / busid
        if not path.is_dir():
            return None
        return self._info_for(path)

    def from_video_node(self, node_path: str) -> Optional[UsbDeviceInfo]:
        """Walk up from /sys/class/video4linux/<node>/device to the USB device."""
        video_name = Path(node_path).resolve().name if Path(node_path).exists() else Path(node_path).name
        device_link = self.sysfs_root / "class" / "video4linux" / video_name / "device"
        if not device_link.exists():
            logger.debug("No sysfs path for %s", node_path)
            return None

        current = device_link.resolve()
        while current.parent != current and current != self.sysfs_root:
            if ":" not in current.name:
                info = self._info_for(current)
                if info is not None:
                    return info
            current = current.parent

        logger.debug("%s is not a USB device", node_path)
        return None


__all__ = ["UsbDeviceInfo", "UsbSysfs", "SYSFS_ROOT", "USBFS_ROOT"]
