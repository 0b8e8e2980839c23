"""
Consumer Crash Monitor & Resume Controller.

Runs the consumer application (OBS Studio by default) in the foreground and
classifies every exit:

    RUNNING -> EXITED(code) -> STOPPED                 (code 0)
                            -> RECOVERING -> RUNNING   (crash within threshold)
                            -> FAILED                  (crash past threshold)

While recovering it waits a fixed delay, makes sure the device health monitor
is still alive, and decides from the consumer's own log whether a stream was
active. If so, and auto-resume is on, the next launch gets the resume
directive (at most once). This monitor only reads device health; it never
drives repair itself.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .errors import ConsumerCrashed, RecoveryThresholdExceeded
from .health_monitor import MONITOR_NAME
from .logging_utils import LoggerLike, ensure_structured_logger, get_module_logger
from .process_registry import ProcessRegistry, SubprocessHandle
from .settings import RecoveryPolicy
from .stream_state import StreamLogInspector, StreamStateStore

Sleeper = Callable[[float], Awaitable[None]]

CONSUMER_NAME = "consumer"


def normalize_exit_code(returncode: int) -> int:
    """Map asyncio's negative signal codes onto the shell's ``128 + signum``."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ConsumerState(Enum):
    RUNNING = "running"
    EXITED = "exited"
    RECOVERING = "recovering"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class CrashEpisode:
    exit_code: int
    was_streaming: bool
    crash_count: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class ConsumerOutcome:
    clean: bool
    exit_code: int
    crash_count: int
    episodes: List[CrashEpisode] = field(default_factory=list)
    error: Optional[RecoveryThresholdExceeded] = None


class ConsumerRunner:
    """Launches the consumer and waits, without a timeout, for it to exit."""

    def __init__(
        self,
        command: str,
        env: Optional[Dict[str, str]] = None,
        registry: Optional[ProcessRegistry] = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        self.command = command
        self.env = env
        self.registry = registry
        self.terminate_timeout = terminate_timeout
        self.logger = get_module_logger("ConsumerRunner")
        self.process: Optional[asyncio.subprocess.Process] = None

    async def run(self, args: Sequence[str]) -> int:
        argv = [self.command, *args]
        try:
            self.process = await asyncio.create_subprocess_exec(*argv, env=self.env)
        except OSError as e:
            self.logger.error("Could not launch %s: %s", self.command, e)
            return 127

        process = self.process
        if self.registry is not None:
            self.registry.register(SubprocessHandle(CONSUMER_NAME, process, signature=argv))
        self.logger.info("%s started (PID: %d)", self.command, process.pid)

        try:
            returncode = await process.wait()
        except asyncio.CancelledError:
            await self.terminate()
            raise
        finally:
            if self.registry is not None:
                self.registry.unregister(CONSUMER_NAME)

        return normalize_exit_code(returncode)

    async def terminate(self) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        self.logger.info("Stopping %s (PID: %d)", self.command, process.pid)
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            self.logger.warning("%s did not exit after SIGTERM, killing...", self.command)
            process.kill()
            await process.wait()


def default_next_steps(bridge_unit: str = "usb-capture-ffmpeg.service", vidpid: Optional[str] = None) -> List[str]:
    steps = [f"USB device disconnected? check: journalctl -u {bridge_unit} -n 50"]
    if vidpid:
        steps.append(f"Hung device? run: capguard repair --vidpid {vidpid}")
        steps.append(f"Device enumerated? run: lsusb -d {vidpid}")
    else:
        steps.append("Device enumerated? run: lsusb")
    steps.append("Driver errors? run: sudo dmesg | tail -n 30")
    return steps


class ConsumerCrashMonitor:

    def __init__(
        self,
        runner: ConsumerRunner,
        base_args: Sequence[str] = (),
        policy: RecoveryPolicy = RecoveryPolicy(),
        *,
        auto_resume: bool = True,
        resume_directive: str = "--startstreaming",
        inspector: Optional[StreamLogInspector] = None,
        state_store: Optional[StreamStateStore] = None,
        registry: Optional[ProcessRegistry] = None,
        companion_name: str = MONITOR_NAME,
        restart_companion: Optional[Callable[[], Any]] = None,
        next_steps: Sequence[str] = (),
        consumer_label: str = "Consumer",
        sleep: Sleeper = asyncio.sleep,
        logger: LoggerLike = None,
    ) -> None:
        self.runner = runner
        self.base_args = list(base_args)
        self.policy = policy
        self.auto_resume = auto_resume
        self.resume_directive = resume_directive
        self.inspector = inspector
        self.state_store = state_store
        self.registry = registry
        self.companion_name = companion_name
        self.restart_companion = restart_companion
        self.next_steps = list(next_steps) or default_next_steps()
        self.consumer_label = consumer_label
        self._sleep = sleep
        self.logger = ensure_structured_logger(logger, fallback_name="ConsumerMonitor")

        self.state = ConsumerState.STOPPED
        self.crash_count = 0
        self.episodes: List[CrashEpisode] = []
        self.launch_history: List[List[str]] = []

    def build_args(self, resume: bool) -> List[str]:
        args = list(self.base_args)
        if resume and self.resume_directive not in args:
            args.append(self.resume_directive)
        return args

    async def run(self) -> ConsumerOutcome:
        resume = False

        while True:
            args = self.build_args(resume)
            self.launch_history.append(args)
            self.state = ConsumerState.RUNNING
            launched_at = time.time()
            self.logger.info("Launching %s %s", self.consumer_label, " ".join(args) or "(no arguments)")

            exit_code = await self.runner.run(args)
            self.state = ConsumerState.EXITED

            if exit_code == 0:
                self.logger.info("%s exited normally", self.consumer_label)
                self.crash_count = 0
                self.state = ConsumerState.STOPPED
                return ConsumerOutcome(clean=True, exit_code=0, crash_count=0, episodes=list(self.episodes))

            self.crash_count += 1
            was_streaming = await self._was_streaming(launched_at)
            episode = CrashEpisode(exit_code=exit_code, was_streaming=was_streaming, crash_count=self.crash_count)
            self.episodes.append(episode)
            if self.state_store is not None:
                await self.state_store.write(was_streaming, exit_code)

            self.logger.warning(
                "%s (streaming before exit: %s)",
                ConsumerCrashed(exit_code, self.crash_count),
                "yes" if was_streaming else "no",
            )

            if self.crash_count > self.policy.crash_threshold:
                self.state = ConsumerState.FAILED
                error = RecoveryThresholdExceeded(
                    self.consumer_label,
                    self.crash_count,
                    self.policy.crash_threshold,
                    exit_code,
                    self.next_steps,
                )
                for line in error.summary_lines():
                    self.logger.error(line)
                return ConsumerOutcome(
                    clean=False,
                    exit_code=exit_code,
                    crash_count=self.crash_count,
                    episodes=list(self.episodes),
                    error=error,
                )

            self.state = ConsumerState.RECOVERING
            self.logger.recovery(
                "Attempting recovery (crash %d/%d)", self.crash_count, self.policy.crash_threshold
            )
            self.logger.recovery("Waiting %.0fs before restart...", self.policy.recovery_delay)
            await self._sleep(self.policy.recovery_delay)

            await self._ensure_companion()

            resume = self.auto_resume and was_streaming
            if resume:
                self.logger.recovery("Stream was active before the crash; resuming with %s", self.resume_directive)

    async def _was_streaming(self, since: float) -> bool:
        if self.inspector is None:
            return False
        return await self.inspector.was_streaming(since=since)

    async def _ensure_companion(self) -> None:
        if self.registry is None or self.restart_companion is None:
            return
        if self.registry.is_alive(self.companion_name):
            return
        self.logger.recovery("%s died, restarting...", self.companion_name)
        result = self.restart_companion()
        if inspect.isawaitable(result):
            await result


__all__ = [
    "CONSUMER_NAME",
    "ConsumerCrashMonitor",
    "ConsumerOutcome",
    "ConsumerRunner",
    "ConsumerState",
    "CrashEpisode",
    "default_next_steps",
    "normalize_exit_code",
]
