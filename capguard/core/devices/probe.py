"""Device presence and responsiveness probe."""

from __future__ import annotations

import asyncio
import os
import stat
from enum import Enum
from typing import Optional

from capguard.core.errors import DeviceAbsent, DeviceUnresponsive
from capguard.core.logging_utils import get_module_logger
from capguard.core.system_commands import CommandRunner

logger = get_module_logger("DeviceProbe")


class HealthState(Enum):
    HEALTHY = "healthy"
    ABSENT = "absent"
    UNRESPONSIVE = "unresponsive"


def is_character_device(node_path: str) -> bool:
    try:
        return stat.S_ISCHR(os.stat(node_path).st_mode)
    except OSError:
        return False


class DeviceProbe:
    """Two-stage probe: the node must be a character device, then a
    capability query (``v4l2-ctl --get-fmt-video``) must succeed in time."""

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: float = 5.0) -> None:
        self.runner = runner or CommandRunner()
        self.timeout = timeout
        self.last_detail = ""

    async def check(self, node_path: Optional[str]) -> None:
        """Raise ``DeviceAbsent`` or ``DeviceUnresponsive`` when unhealthy."""
        if not node_path:
            raise DeviceAbsent("<unset>", "no device node configured")

        present = await asyncio.to_thread(is_character_device, node_path)
        if not present:
            raise DeviceAbsent(node_path, "node missing or not a character device")

        result = await self.runner.run(
            ["v4l2-ctl", "-d", node_path, "--get-fmt-video"],
            timeout=self.timeout,
        )
        if not result.ok:
            raise DeviceUnresponsive(node_path, result.message or f"exit code {result.returncode}")

    async def probe(self, node_path: Optional[str]) -> HealthState:
        try:
            await self.check(node_path)
        except DeviceAbsent as exc:
            self.last_detail = str(exc)
            return HealthState.ABSENT
        except DeviceUnresponsive as exc:
            self.last_detail = str(exc)
            return HealthState.UNRESPONSIVE
        self.last_detail = ""
        return HealthState.HEALTHY


__all__ = ["HealthState", "DeviceProbe", "is_character_device"]
