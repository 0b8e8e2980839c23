"""
Supervision System - wires the loops together for one launcher session.

Startup order:
1. sweep liveness records left by a previous session
2. pre-flight checks (tools, directories, device, loopback sink)
3. bridging process + its supervision loop
4. device health monitor
5. consumer crash monitor in the foreground

A single ShutdownCoordinator runs cleanup exactly once, whether the consumer
exits, the crash threshold is exceeded or a signal arrives.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .asyncio_utils import cancel_and_wait, create_logged_task
from .bridge_supervisor import BridgeConfig, BridgeSupervisor
from .consumer_monitor import ConsumerCrashMonitor, ConsumerOutcome, ConsumerRunner, default_next_steps
from .devices.identity import DeviceIdentity
from .devices.probe import DeviceProbe
from .devices.usb_sysfs import UsbSysfs
from .errors import BridgingProcessDied, PreflightFailed
from .hardware.controller import HardwareController, LinuxHardwareController
from .health_monitor import DeviceHealthMonitor
from .logging_utils import get_module_logger
from .loopback import LoopbackConfig, LoopbackManager
from .preflight import PreflightReport, run_preflight
from .process_registry import ProcessRegistry
from .repair import RepairController
from .services import DependentService, SystemdService
from .settings import CaptureSettings
from .shutdown_coordinator import ShutdownCoordinator, ShutdownState
from .stream_state import StreamLogInspector, StreamStateStore
from .system_commands import CommandRunner

EXIT_CLEAN = 0
EXIT_THRESHOLD_EXCEEDED = 1
EXIT_PREFLIGHT_FAILED = 2

Sleeper = Callable[[float], Awaitable[None]]


class SupervisionSystem:

    def __init__(
        self,
        settings: CaptureSettings,
        *,
        registry: Optional[ProcessRegistry] = None,
        hardware: Optional[HardwareController] = None,
        probe: Optional[DeviceProbe] = None,
        commands: Optional[CommandRunner] = None,
        consumer_runner: Optional[ConsumerRunner] = None,
        loopback: Optional[LoopbackManager] = None,
        sysfs: Optional[UsbSysfs] = None,
        bridge_log: Optional[Path] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.logger = get_module_logger("SupervisionSystem")
        self.commands = commands or CommandRunner(use_sudo=settings.use_sudo)
        self.registry = registry or ProcessRegistry(settings.state_dir)
        self.stream_store = StreamStateStore(settings.state_dir)
        self.coordinator = ShutdownCoordinator()
        sysfs = sysfs or UsbSysfs()

        if settings.device or settings.vidpid:
            try:
                self.identity = DeviceIdentity.resolve(settings.device, settings.vidpid, sysfs)
            except ValueError as exc:
                raise PreflightFailed(str(exc), ["Pass --vidpid vvvv:pppp, e.g. --vidpid 3188:1000"]) from exc
        else:
            self.identity = DeviceIdentity()

        self.hardware = hardware or LinuxHardwareController(
            sysfs,
            self.commands,
            rebind_pause=settings.rebind_pause,
            hub_off_pause=settings.hub_off_pause,
        )
        self.probe = probe or DeviceProbe(self.commands, timeout=settings.probe_timeout)

        self.loopback = loopback
        if self.loopback is None and settings.use_loopback:
            self.loopback = LoopbackManager(
                LoopbackConfig(
                    device=settings.loopback_device,
                    video_nr=settings.loopback_nr,
                    card_label=settings.loopback_label,
                    max_width=settings.loopback_max_width,
                    max_height=settings.loopback_max_height,
                ),
                self.commands,
                sleep=sleep,
            )

        self.bridge: Optional[BridgeSupervisor] = None
        if settings.bridge_enabled():
            self.bridge = BridgeSupervisor(
                BridgeConfig.from_settings(settings, log_file=bridge_log),
                self.registry,
                sleep=sleep,
            )

        self.services: list[DependentService] = []
        if self.bridge is not None:
            self.services.append(self.bridge)
        if settings.manage_units:
            self.services.extend(SystemdService(unit, self.commands) for unit in settings.units())

        self.repair = RepairController(self.hardware, self.services)

        self.health_monitor: Optional[DeviceHealthMonitor] = None
        if settings.device:
            self.health_monitor = DeviceHealthMonitor(
                self.identity,
                self.probe,
                self.repair,
                self.services,
                settings.policy,
                hub_port=settings.hub_port,
                registry=self.registry,
                sleep=sleep,
            )

        consumer_env = os.environ.copy()
        consumer_env["GSETTINGS_SCHEMA_DIR"] = "/usr/share/glib-2.0/schemas"
        self.consumer_runner = consumer_runner or ConsumerRunner(
            settings.consumer_command,
            env=consumer_env,
            registry=self.registry,
        )
        self.consumer_monitor = ConsumerCrashMonitor(
            self.consumer_runner,
            settings.consumer_args,
            settings.policy,
            auto_resume=settings.auto_resume,
            resume_directive=settings.resume_directive,
            inspector=StreamLogInspector(
                settings.consumer_log_dir,
                start_marker=settings.stream_start_marker,
                stop_marker=settings.stream_stop_marker,
                tail_lines=settings.log_tail_lines,
            ),
            state_store=self.stream_store,
            registry=self.registry,
            restart_companion=self._restart_health_monitor if self.health_monitor else None,
            next_steps=default_next_steps(settings.bridge_unit, self.identity.vidpid),
            consumer_label=settings.consumer_command,
            sleep=sleep,
        )

        self._consumer_task: Optional[asyncio.Task] = None
        self._signal_received: Optional[int] = None

        self.coordinator.register_cleanup(self._stop_health_monitor)
        self.coordinator.register_cleanup(self._stop_bridge)
        self.coordinator.register_cleanup(self._stop_consumer)
        self.coordinator.register_cleanup(self._remove_records)

    # ------------------------------------------------------------------
    # Startup

    @property
    def stopping(self) -> bool:
        """True once a signal arrived or cleanup has begun."""
        return self._signal_received is not None or self.coordinator.state != ShutdownState.RUNNING

    async def preflight(self) -> PreflightReport:
        swept = await asyncio.to_thread(self.registry.sweep_stale)
        if swept:
            self.logger.warning("Terminated %d process(es) left by a previous session", swept)
        return await run_preflight(self.settings, probe=self.probe, loopback=self.loopback)

    async def start_background(self) -> None:
        """Start the bridge and the health monitor, unless shutdown has begun."""
        if self.stopping:
            return

        if self.bridge is not None:
            try:
                await self.bridge.start()
            except BridgingProcessDied as exc:
                self.logger.error("%s", exc)
            if self.stopping:
                self.logger.info("Shutdown requested during startup, not supervising bridge")
                return
            self.bridge.start_supervision()
        else:
            self.logger.warning("No device or loopback configured, skipping bridge")

        if self.health_monitor is not None:
            self.health_monitor.start()
        else:
            self.logger.info("Skipping device health monitor (no device specified)")

    def _restart_health_monitor(self) -> None:
        if self.health_monitor is None or self.stopping:
            return
        self.health_monitor.start()

    async def run_consumer(self) -> ConsumerOutcome:
        self._consumer_task = create_logged_task(
            self.consumer_monitor.run(),
            logger=self.logger,
            context="consumer-monitor",
        )
        return await self._consumer_task

    # ------------------------------------------------------------------
    # Whole session

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: int) -> None:
        if self._signal_received is not None:
            return
        self._signal_received = sig
        self.logger.info("Received %s", signal.Signals(sig).name)
        if self._consumer_task is not None and not self._consumer_task.done():
            self._consumer_task.cancel()
        create_logged_task(
            self.coordinator.initiate_shutdown(f"signal {signal.Signals(sig).name}"),
            logger=self.logger,
            context="shutdown",
        )

    def _interrupted_status(self) -> Optional[int]:
        if self._signal_received is not None:
            return 128 + self._signal_received
        return None

    async def run(self) -> int:
        """Run the session and return the process exit status."""
        exit_code = EXIT_CLEAN
        try:
            try:
                await self.preflight()
            except PreflightFailed as exc:
                self.logger.error("Pre-flight failed: %s", exc)
                for hint in exc.hints:
                    self.logger.error("  %s", hint)
                return EXIT_PREFLIGHT_FAILED

            await self.start_background()

            interrupted = self._interrupted_status()
            if interrupted is not None:
                return interrupted

            try:
                outcome = await self.run_consumer()
            except asyncio.CancelledError:
                interrupted = self._interrupted_status()
                if interrupted is None:
                    raise
                return interrupted

            if outcome.error is not None:
                exit_code = EXIT_THRESHOLD_EXCEEDED
            return exit_code
        finally:
            await self.coordinator.initiate_shutdown("session end")
            await self.coordinator.wait_for_shutdown()

    # ------------------------------------------------------------------
    # Cleanup callbacks

    async def _stop_health_monitor(self) -> None:
        if self.health_monitor is not None:
            await self.health_monitor.stop()

    async def _stop_bridge(self) -> None:
        if self.bridge is not None:
            await self.bridge.shutdown()

    async def _stop_consumer(self) -> None:
        await cancel_and_wait(self._consumer_task)
        await self.consumer_runner.terminate()

    async def _remove_records(self) -> None:
        self.registry.clear()
        self.stream_store.clear()

    async def cleanup(self) -> None:
        await self.coordinator.initiate_shutdown("cleanup")
        await self.coordinator.wait_for_shutdown()


__all__ = [
    "SupervisionSystem",
    "EXIT_CLEAN",
    "EXIT_THRESHOLD_EXCEEDED",
    "EXIT_PREFLIGHT_FAILED",
]
