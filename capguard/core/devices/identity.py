"""Device identity: hardware id plus the V4L2 node it currently appears on."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from capguard.core.logging_utils import get_module_logger

from .usb_sysfs import UsbSysfs

logger = get_module_logger("DeviceIdentity")

_VIDPID_RE = re.compile(r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{4})$")
BY_ID_DIR = Path("/dev/v4l/by-id")


def parse_vidpid(value: str) -> Tuple[str, str]:
    """Split ``vvvv:pppp`` into lowercase vendor and product ids."""
    match = _VIDPID_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid vendor:product id '{value}' (expected e.g. 3188:1000)")
    return match.group(1).lower(), match.group(2).lower()


@dataclass(frozen=True)
class DeviceIdentity:
    """Immutable for the session. Only the node an alias points to may move."""

    vendor_id: Optional[str] = None
    product_id: Optional[str] = None
    node_path: Optional[str] = None
    alias_path: Optional[str] = None

    @property
    def has_hardware_id(self) -> bool:
        return bool(self.vendor_id and self.product_id)

    @property
    def vidpid(self) -> Optional[str]:
        if not self.has_hardware_id:
            return None
        return f"{self.vendor_id}:{self.product_id}"

    def resolve_node(self) -> Optional[str]:
        """Current node path, following the stable alias when there is one."""
        if self.alias_path:
            alias = Path(self.alias_path)
            if alias.exists():
                return os.path.realpath(alias)
            return self.node_path
        return self.node_path

    def describe(self) -> str:
        parts = [self.node_path or "no node"]
        if self.vidpid:
            parts.append(self.vidpid)
        if self.alias_path:
            parts.append(f"alias {self.alias_path}")
        return " / ".join(parts)

    @classmethod
    def resolve(
        cls,
        device: Optional[str] = None,
        vidpid: Optional[str] = None,
        sysfs: Optional[UsbSysfs] = None,
    ) -> "DeviceIdentity":
        """Build an identity from whatever the operator supplied.

        A missing vendor:product id is looked up through sysfs from the node;
        a node given as a /dev/v4l/by-id symlink is kept as the alias.
        """
        sysfs = sysfs or UsbSysfs()
        vendor_id = product_id = None
        if vidpid:
            vendor_id, product_id = parse_vidpid(vidpid)

        node_path = device
        alias_path = None
        if device and Path(device).is_symlink():
            alias_path = device
            node_path = os.path.realpath(device)

        if device and not (vendor_id and product_id):
            info = sysfs.from_video_node(node_path or device)
            if info is not None:
                vendor_id, product_id = info.vendor_id, info.product_id
                logger.info("Resolved %s to USB id %s (bus %s)", device, info.vidpid, info.busid)

        if alias_path is None and node_path and vendor_id and product_id:
            alias_path = find_by_id_alias(node_path)

        return cls(vendor_id=vendor_id, product_id=product_id, node_path=node_path, alias_path=alias_path)


def find_by_id_alias(node_path: str, by_id_dir: Path = BY_ID_DIR) -> Optional[str]:
    """Stable /dev/v4l/by-id symlink pointing at ``node_path``, if any."""
    if not by_id_dir.is_dir():
        return None
    target = os.path.realpath(node_path)
    for link in sorted(by_id_dir.iterdir()):
        if link.name.endswith("-index0") and os.path.realpath(link) == target:
            return str(link)
    return None


__all__ = ["DeviceIdentity", "parse_vidpid", "find_by_id_alias"]
