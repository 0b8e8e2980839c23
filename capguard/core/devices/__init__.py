"""Capture device identity, sysfs lookups and health probing."""

from .identity import DeviceIdentity, find_by_id_alias, parse_vidpid
from .probe import DeviceProbe, HealthState, is_character_device
from .usb_sysfs import UsbDeviceInfo, UsbSysfs

__all__ = [
    "DeviceIdentity",
    "DeviceProbe",
    "HealthState",
    "UsbDeviceInfo",
    "UsbSysfs",
    "find_by_id_alias",
    "is_character_device",
    "parse_vidpid",
]
