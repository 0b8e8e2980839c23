import asyncio
from pathlib import Path
from typing import Dict, Iterable

import aiofiles

from capguard.core.logging_utils import get_module_logger


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reads ``key = value`` files such as ``config.txt`` and the
    ``/etc/default/usb-capture`` environment file written by the installer."""

    def __init__(self):
        self.logger = get_module_logger("ConfigManager")

    # ------------------------------------------------------------------
    # Internal helpers

    def _parse_config_lines(self, lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if line.startswith('export '):
                line = line[len('export '):].lstrip()
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]
            elif '#' in value:
                value = value.split('#')[0].strip()

            config[key] = value

        return config

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Read a config file synchronously; a missing file yields ``{}``."""
        config: Dict[str, str] = {}

        if not config_path.exists():
            return config

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = self._parse_config_lines(f)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)

        return config

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        """Async version for use in async contexts."""
        config: Dict[str, str] = {}

        if not await asyncio.to_thread(config_path.exists):
            return config

        try:
            lines: list[str] = []
            async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                async for line in f:
                    lines.append(line)
            config = self._parse_config_lines(lines)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)

        return config

    def read_layered(self, *paths: Path) -> Dict[str, str]:
        """Read several files, later files overriding earlier ones."""
        merged: Dict[str, str] = {}
        for path in paths:
            values = self.read_config(path)
            if values:
                logger.debug("Loaded %d values from %s", len(values), path)
            merged.update(values)
        return merged

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        value = str(config[key]).lower()
        return value in ('true', '1', 'yes', 'on')

    def get_int(self, config: Dict[str, str], key: str, default: int = 0) -> int:
        if key not in config:
            return default

        try:
            return int(config[key])
        except ValueError:
            logger.warning("Invalid int value for %s: %s, using default %d", key, config[key], default)
            return default

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        if key not in config:
            return default

        try:
            return float(config[key])
        except ValueError:
            logger.warning("Invalid float value for %s: %s, using default %f", key, config[key], default)
            return default

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager
