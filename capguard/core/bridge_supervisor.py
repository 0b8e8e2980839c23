"""
Bridging-Process Supervisor - keeps exactly one bridging process running.

The bridging process reads the physical capture device and writes to the
loopback sink the consumer reads from. It is started in its own session so
the whole process group (shell wrapper plus its encoder child) can be
signalled together. The supervisor never touches the consumer: a bridge
death is a warning and a restart, nothing more.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from .asyncio_utils import cancel_and_wait, create_logged_task
from .errors import BridgingProcessDied
from .logging_utils import LoggerLike, ensure_structured_logger
from .orphan_cleanup import cleanup_signature_processes
from .process_registry import ProcessRegistry, SubprocessHandle, TaskHandle
from .services import DependentService
from .settings import CaptureSettings

Sleeper = Callable[[float], Awaitable[None]]

BRIDGE_NAME = "bridge"
SUPERVISOR_NAME = "bridge-supervisor"


@dataclass
class BridgeConfig:
    command: list[str]
    input_device: str
    output_sink: str
    resolution: str = "3840x2160"
    fps: int = 30
    input_format: str = "NV12"
    hdr_mode: int = 2
    grace_period: float = 3.0
    poll_interval: float = 5.0
    restart_backoff: float = 2.0
    stop_timeout: float = 2.0
    log_file: Optional[Path] = None
    extra_env: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [
            *self.command,
            self.input_device,
            self.output_sink,
            self.resolution,
            str(self.fps),
            self.input_format,
        ]

    def environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["USB_CAPTURE_HDR_MODE"] = str(self.hdr_mode)
        env["USB_CAPTURE_RES"] = self.resolution
        env["USB_CAPTURE_FPS"] = str(self.fps)
        env["USB_CAPTURE_FORMAT"] = self.input_format
        env.update(self.extra_env)
        return env

    @classmethod
    def from_settings(cls, settings: CaptureSettings, log_file: Optional[Path] = None) -> "BridgeConfig":
        return cls(
            command=settings.resolved_bridge_command(),
            input_device=settings.device or "",
            output_sink=settings.loopback_device,
            resolution=settings.resolution,
            fps=settings.fps,
            input_format=settings.input_format,
            hdr_mode=settings.hdr_mode,
            grace_period=settings.bridge_grace_period,
            poll_interval=settings.bridge_poll_interval,
            restart_backoff=settings.bridge_restart_backoff,
            stop_timeout=settings.bridge_stop_timeout,
            log_file=log_file,
        )


class BridgeSupervisor(DependentService):
    """Starts, watches and stops the bridging process."""

    def __init__(
        self,
        config: BridgeConfig,
        registry: Optional[ProcessRegistry] = None,
        *,
        sleep: Sleeper = asyncio.sleep,
        logger: LoggerLike = None,
    ) -> None:
        self.name = BRIDGE_NAME
        self.config = config
        self.registry = registry
        self._sleep = sleep
        self.logger = ensure_structured_logger(logger, fallback_name="BridgeSupervisor")

        self._handle: Optional[SubprocessHandle] = None
        self._lock = asyncio.Lock()
        self._wanted = False
        self._supervise_task: Optional[asyncio.Task] = None
        self._closed = False
        self.restart_count = 0

    # ------------------------------------------------------------------
    # Liveness

    @property
    def handle(self) -> Optional[SubprocessHandle]:
        return self._handle

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    def is_alive(self) -> bool:
        return self._handle is not None and self._handle.is_alive()

    async def is_active(self) -> bool:
        return self.is_alive()

    # ------------------------------------------------------------------
    # Start / stop

    async def start(self) -> bool:
        """Spawn the bridging process and wait out the grace period.

        Raises:
            BridgingProcessDied: ``started=False`` when the process could not
                be spawned, ``started=True`` when it exited inside the grace
                period.
        """
        async with self._lock:
            return await self._start_locked()

    async def _start_locked(self) -> bool:
        if self._closed:
            self.logger.info("Bridge is shut down, not starting")
            return False
        self._wanted = True
        if self.is_alive():
            return True

        argv = self.config.argv
        self.logger.info(
            "Starting bridge: %s -> %s (%s@%s %s HDR_MODE=%s)",
            self.config.input_device,
            self.config.output_sink,
            self.config.resolution,
            self.config.fps,
            self.config.input_format,
            self.config.hdr_mode,
        )
        self.logger.debug("Command: %s", " ".join(argv))

        log_handle = None
        if self.config.log_file is not None:
            self.config.log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = open(self.config.log_file, "ab")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_handle if log_handle is not None else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.STDOUT if log_handle is not None else asyncio.subprocess.DEVNULL,
                env=self.config.environment(),
                start_new_session=True,
            )
        except OSError as exc:
            raise BridgingProcessDied(f"bridging process could not be started: {exc}", started=False) from exc
        finally:
            if log_handle is not None:
                log_handle.close()

        self._handle = SubprocessHandle(BRIDGE_NAME, process, signature=argv)
        if self.registry is not None:
            self.registry.register(self._handle)
        self.logger.ok("Bridge started (PID: %d)", process.pid)

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.grace_period)
        except asyncio.TimeoutError:
            return True

        exit_code = process.returncode
        self._signal_group(process.pid, signal.SIGKILL)
        self._discard_handle()
        raise BridgingProcessDied(
            f"bridging process died immediately (exit code {exit_code}); check device and log",
            started=True,
            exit_code=exit_code,
        )

    async def stop(self) -> bool:
        async with self._lock:
            self._wanted = False
            await self._terminate()
        return True

    async def restart(self) -> bool:
        async with self._lock:
            await self._terminate()
            try:
                return await self._start_locked()
            except BridgingProcessDied as exc:
                self.logger.warning("Bridge restart failed: %s", exc)
                return False

    async def _terminate(self) -> None:
        handle = self._handle
        if handle is None:
            return

        process = handle.process
        if process.returncode is None:
            self.logger.info("Stopping bridge (PID: %d)", process.pid)
            self._signal_group(process.pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Bridge did not exit after SIGTERM, killing...")
                self._signal_group(process.pid, signal.SIGKILL)
                await process.wait()

        # Children of the session leader can outlive it.
        self._signal_group(process.pid, signal.SIGKILL)
        self._discard_handle()

        swept = await asyncio.to_thread(
            cleanup_signature_processes,
            handle.signature,
            self.config.stop_timeout,
        )
        if swept:
            self.logger.warning("Swept %d orphaned bridge process(es)", swept)

    def _signal_group(self, pgid: int, sig: int) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(pgid, sig)

    def _discard_handle(self) -> None:
        self._handle = None
        if self.registry is not None:
            self.registry.unregister(BRIDGE_NAME)

    # ------------------------------------------------------------------
    # Supervision loop

    async def supervise(self) -> None:
        """Poll liveness forever, restarting the bridge when it has died.

        Restart failures are logged and retried on the next poll.
        """
        while True:
            await self._sleep(self.config.poll_interval)
            if not self._wanted or self.is_alive() or self._lock.locked():
                continue

            exit_code = self._handle.returncode if self._handle else None
            self.logger.warning(
                "Bridge died (PID: %s, exit code %s). Restarting in %.0fs...",
                self.pid or "unknown",
                exit_code,
                self.config.restart_backoff,
            )
            await self._sleep(self.config.restart_backoff)
            if not self._wanted:
                continue
            try:
                async with self._lock:
                    await self._terminate()
                    await self._start_locked()
                self.restart_count += 1
                self.logger.recovery("Bridge restarted (restart #%d)", self.restart_count)
            except BridgingProcessDied as exc:
                self.logger.error("Bridge restart failed: %s", exc)

    def start_supervision(self) -> Optional[asyncio.Task]:
        if self._closed:
            self.logger.info("Bridge is shut down, not supervising")
            return None
        if self._supervise_task is not None and not self._supervise_task.done():
            return self._supervise_task
        self._supervise_task = create_logged_task(self.supervise(), logger=self.logger, context=SUPERVISOR_NAME)
        if self.registry is not None:
            self.registry.register(TaskHandle(SUPERVISOR_NAME, self._supervise_task))
        return self._supervise_task

    async def shutdown(self) -> None:
        """Stop the supervision loop, then the bridging process.

        The supervisor cannot be started again afterwards.
        """
        self._closed = True
        await cancel_and_wait(self._supervise_task)
        self._supervise_task = None
        if self.registry is not None:
            self.registry.unregister(SUPERVISOR_NAME)
        await self.stop()


__all__ = ["BridgeConfig", "BridgeSupervisor", "BRIDGE_NAME", "SUPERVISOR_NAME"]
