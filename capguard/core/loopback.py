"""v4l2loopback sink management.

The loopback must be loaded with ``exclusive_caps=0`` so the bridging process
can write while the consumer reads. A module loaded with exclusive caps is
unloaded and reloaded with the right parameters.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .devices.probe import is_character_device
from .logging_utils import get_module_logger
from .system_commands import CommandRunner

logger = get_module_logger("Loopback")

MODULE_NAME = "v4l2loopback"
SYS_MODULE_ROOT = Path("/sys/module")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class LoopbackConfig:
    device: str = "/dev/video10"
    video_nr: int = 10
    card_label: str = "USB_Capture_Loop"
    max_width: int = 3840
    max_height: int = 2160

    def modprobe_args(self) -> list[str]:
        return [
            "modprobe",
            MODULE_NAME,
            f"video_nr={self.video_nr}",
            f"card_label={self.card_label}",
            "exclusive_caps=0",
            f"max_width={self.max_width}",
            f"max_height={self.max_height}",
        ]


class LoopbackManager:

    def __init__(
        self,
        config: LoopbackConfig,
        runner: Optional[CommandRunner] = None,
        *,
        sys_module_root: Path = SYS_MODULE_ROOT,
        settle_delay: float = 2.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.config = config
        self.runner = runner or CommandRunner()
        self.sys_module_root = Path(sys_module_root)
        self.settle_delay = settle_delay
        self._sleep = sleep

    @property
    def module_dir(self) -> Path:
        return self.sys_module_root / MODULE_NAME

    def is_loaded(self) -> bool:
        return self.module_dir.is_dir()

    def exclusive_caps(self) -> Optional[bool]:
        """First device's exclusive_caps flag, or None when unknown."""
        try:
            raw = (self.module_dir / "parameters" / "exclusive_caps").read_text().strip()
        except OSError:
            return None
        first = raw.split(",")[0].strip()
        return first in ("Y", "1")

    def device_present(self) -> bool:
        return is_character_device(self.config.device)

    async def ensure(self) -> bool:
        """Make sure the loopback sink exists with shared caps.

        Returns False when the module cannot be loaded or the node does not
        appear.
        """
        if self.is_loaded():
            if self.exclusive_caps():
                logger.warning("%s loaded with exclusive_caps=1 (blocks readers). Reloading...", MODULE_NAME)
                result = await self.runner.run(["modprobe", "-r", MODULE_NAME], privileged=True)
                if not result.ok:
                    logger.warning("Could not unload %s: %s", MODULE_NAME, result.message)
                await self._sleep(1.0)
            elif self.device_present():
                logger.ok("%s available at %s", MODULE_NAME, self.config.device)
                return True

        logger.info(
            "Loading %s (exclusive_caps=0, video_nr=%d)...",
            MODULE_NAME,
            self.config.video_nr,
        )
        result = await self.runner.run(self.config.modprobe_args(), privileged=True)
        if not result.ok:
            logger.warning("Failed to load %s (may not be installed): %s", MODULE_NAME, result.message)
            return False
        await self._sleep(self.settle_delay)

        if self.device_present():
            logger.ok("%s available at %s", MODULE_NAME, self.config.device)
            return True

        logger.warning("%s module loaded but %s not found", MODULE_NAME, self.config.device)
        return False


__all__ = ["LoopbackConfig", "LoopbackManager", "MODULE_NAME"]
