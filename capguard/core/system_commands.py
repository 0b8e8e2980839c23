"""Async wrappers around the external tools capguard shells out to."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from .logging_utils import get_module_logger

logger = get_module_logger("SystemCommands")

COMMAND_NOT_FOUND = 127
COMMAND_TIMED_OUT = 124


@dataclass
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def message(self) -> str:
        return (self.stderr or self.stdout).strip()


@dataclass
class CommandRunner:
    """Runs commands through asyncio subprocesses.

    ``use_sudo`` prefixes privileged commands with ``sudo -n`` when the
    process is not already root; ``sudo -n`` never prompts, so a missing
    sudoers rule fails fast instead of hanging a supervision loop.
    """

    use_sudo: bool = True
    default_timeout: float = 15.0
    env: Optional[Mapping[str, str]] = None
    history: list[list[str]] = field(default_factory=list, repr=False)

    def privileged(self, argv: Sequence[str]) -> list[str]:
        if self.use_sudo and os.geteuid() != 0:
            return ["sudo", "-n", *argv]
        return list(argv)

    @staticmethod
    def which(name: str) -> Optional[str]:
        return shutil.which(name)

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        privileged: bool = False,
    ) -> CommandResult:
        cmd = self.privileged(argv) if privileged else list(argv)
        self.history.append(cmd)
        limit = self.default_timeout if timeout is None else timeout

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(self.env) if self.env is not None else None,
            )
        except FileNotFoundError:
            return CommandResult(cmd, COMMAND_NOT_FOUND, "", f"{cmd[0]} not found")
        except OSError as exc:
            return CommandResult(cmd, 1, "", str(exc))

        payload = input_text.encode("utf-8") if input_text is not None else None
        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(payload), timeout=limit)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.debug("Command timed out after %.1fs: %s", limit, " ".join(cmd))
            return CommandResult(cmd, COMMAND_TIMED_OUT, "", f"timed out after {limit:.1f}s", timed_out=True)
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise

        return CommandResult(
            cmd,
            proc.returncode if proc.returncode is not None else 1,
            stdout_raw.decode("utf-8", errors="replace"),
            stderr_raw.decode("utf-8", errors="replace"),
        )


__all__ = ["CommandResult", "CommandRunner", "COMMAND_NOT_FOUND", "COMMAND_TIMED_OUT"]
