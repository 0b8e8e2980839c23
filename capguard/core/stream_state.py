"""Streaming-state detection and the persisted ``streaming.json`` flag.

Whether the consumer was broadcasting when it crashed is inferred from its
own log: the newest log file is scanned for the start-of-stream marker. An
optional stop marker narrows this to "started and not stopped again".
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from .logging_utils import get_module_logger
from .paths import STREAM_STATE_FILENAME

logger = get_module_logger("StreamState")

DEFAULT_START_MARKER = "==== Streaming Start"

# Filesystem timestamps lag the wall clock by up to a timer tick.
MTIME_SLACK = 1.0


def _newest_log(log_dir: Path) -> Optional[Path]:
    if not log_dir.is_dir():
        return None
    candidates = [path for path in log_dir.iterdir() if path.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda path: (path.stat().st_mtime, path.name))


@dataclass
class StreamLogInspector:
    log_dir: Path
    start_marker: str = DEFAULT_START_MARKER
    stop_marker: Optional[str] = None
    tail_lines: int = 400

    async def newest_log(self, since: Optional[float] = None) -> Optional[Path]:
        """Newest consumer log, ignoring files last written before ``since``."""
        path = await asyncio.to_thread(_newest_log, Path(self.log_dir))
        if path is None:
            return None
        if since is not None and path.stat().st_mtime < since - MTIME_SLACK:
            logger.debug("Newest consumer log %s predates this launch", path.name)
            return None
        return path

    async def read_tail(self, path: Path) -> list[str]:
        tail: deque[str] = deque(maxlen=self.tail_lines)
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            async for line in f:
                tail.append(line.rstrip("\n"))
        return list(tail)

    def lines_indicate_streaming(self, lines: list[str]) -> bool:
        last_start = last_stop = -1
        for index, line in enumerate(lines):
            if self.start_marker in line:
                last_start = index
            elif self.stop_marker and self.stop_marker in line:
                last_stop = index
        return last_start >= 0 and last_start > last_stop

    async def was_streaming(self, since: Optional[float] = None) -> bool:
        path = await self.newest_log(since)
        if path is None:
            return False
        try:
            lines = await self.read_tail(path)
        except OSError as e:
            logger.warning("Could not read consumer log %s: %s", path, e)
            return False
        streaming = self.lines_indicate_streaming(lines)
        logger.debug("Consumer log %s: streaming=%s", path.name, streaming)
        return streaming


class StreamStateStore:
    """Overwrite-only JSON flag recording whether the consumer was streaming."""

    def __init__(self, state_dir: Path, filename: str = STREAM_STATE_FILENAME) -> None:
        self.path = Path(state_dir) / filename

    async def write(self, streaming: bool, exit_code: Optional[int] = None) -> None:
        payload: Dict[str, Any] = {
            "streaming": bool(streaming),
            "exit_code": exit_code,
            "updated_at": time.time(),
        }
        await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2))
        await asyncio.to_thread(os.replace, tmp_path, self.path)

    async def read(self) -> Optional[Dict[str, Any]]:
        if not await asyncio.to_thread(self.path.exists):
            return None
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except (OSError, ValueError) as e:
            logger.warning("Unreadable stream state %s: %s", self.path, e)
            return None

    async def was_streaming(self) -> bool:
        data = await self.read()
        return bool(data and data.get("streaming"))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


__all__ = ["StreamLogInspector", "StreamStateStore", "DEFAULT_START_MARKER"]
