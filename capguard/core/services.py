"""Dependent services restarted around hardware repair.

A dependent service is anything that holds the capture device open and must
let go of it before a reset: the systemd units installed alongside capguard,
or the in-process bridge supervisor when the launcher runs the pipeline.
Restart operations are idempotent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from .logging_utils import get_module_logger
from .system_commands import CommandRunner

logger = get_module_logger("Services")


class DependentService(ABC):
    name: str = "service"

    @abstractmethod
    async def is_active(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> bool:
        ...

    @abstractmethod
    async def stop(self) -> bool:
        ...

    async def restart(self) -> bool:
        await self.stop()
        return await self.start()


class SystemdService(DependentService):
    """A systemd unit driven through ``systemctl --no-ask-password``."""

    def __init__(self, unit: str, runner: Optional[CommandRunner] = None) -> None:
        self.name = unit
        self.unit = unit
        self.runner = runner or CommandRunner()

    async def _systemctl(self, *args: str) -> bool:
        result = await self.runner.run(
            ["systemctl", "--no-ask-password", *args, self.unit],
            privileged=args[0] != "is-active",
        )
        if not result.ok and args[0] != "is-active":
            logger.warning("systemctl %s %s failed: %s", args[0], self.unit, result.message or result.returncode)
        return result.ok

    async def is_active(self) -> bool:
        return await self._systemctl("is-active", "--quiet")

    async def start(self) -> bool:
        return await self._systemctl("start")

    async def stop(self) -> bool:
        return await self._systemctl("stop")

    async def restart(self) -> bool:
        return await self._systemctl("restart")


__all__ = ["DependentService", "SystemdService"]
