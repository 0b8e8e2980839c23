"""
Device Health Monitor - polls the capture device and drives repair.

Each cycle probes the node (present and a character device, then a
capability query). A healthy result resets the recovery counter and starts
any service a repair left stopped. Anything else stops the dependent
services, runs the repair ladder in the same iteration and waits for the
next probe. Once the counter passes ``max_repair_attempts`` the ladder is
escalated (hub power cycle included), a human-escalation diagnostic is
logged, and the monitor cools down before starting a fresh count.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

from .asyncio_utils import cancel_and_wait, create_logged_task
from .devices.identity import DeviceIdentity
from .devices.probe import DeviceProbe, HealthState
from .logging_utils import LoggerLike, ensure_structured_logger
from .orphan_cleanup import describe_process, find_device_holders
from .process_registry import ProcessRegistry, RegistryError, TaskHandle
from .recovery import RecoveryCounter
from .repair import RepairController, RepairReport, build_plan
from .services import DependentService
from .settings import RecoveryPolicy

StateListener = Callable[[Optional[HealthState], HealthState], None]
Sleeper = Callable[[float], Awaitable[None]]

MONITOR_NAME = "device-monitor"


class DeviceHealthMonitor:

    def __init__(
        self,
        identity: DeviceIdentity,
        probe: DeviceProbe,
        repair: RepairController,
        services: Sequence[DependentService] = (),
        policy: RecoveryPolicy = RecoveryPolicy(),
        *,
        hub_port: Optional[str] = None,
        registry: Optional[ProcessRegistry] = None,
        name: str = MONITOR_NAME,
        sleep: Sleeper = asyncio.sleep,
        logger: LoggerLike = None,
    ) -> None:
        self.identity = identity
        self.probe = probe
        self.repair = repair
        self.services = list(services)
        self.policy = policy
        self.hub_port = hub_port
        self.registry = registry
        self.name = name
        self._sleep = sleep
        self.logger = ensure_structured_logger(logger, fallback_name="DeviceHealthMonitor")

        self.counter = RecoveryCounter(policy.max_repair_attempts, name="device")
        self.node_path = identity.resolve_node()
        self.state: Optional[HealthState] = None
        self.repair_count = 0
        self.escalation_count = 0
        self.last_report: Optional[RepairReport] = None
        self._listeners: List[StateListener] = []
        self._stopped_services: List[DependentService] = []
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # State

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: HealthState) -> None:
        previous = self.state
        self.state = state
        if previous == state:
            return
        for listener in self._listeners:
            try:
                listener(previous, state)
            except Exception as e:
                self.logger.error("State listener failed: %s", e)

    # ------------------------------------------------------------------
    # Probe cycle

    async def probe_once(self) -> HealthState:
        """Run one probe cycle, remediating when the device is unhealthy."""
        state = await self.probe.probe(self.node_path)

        if state == HealthState.ABSENT and self.identity.alias_path:
            resolved = self.identity.resolve_node()
            if resolved and resolved != self.node_path:
                self.logger.info("Device re-enumerated: %s -> %s", self.node_path, resolved)
                self.node_path = resolved
                state = await self.probe.probe(self.node_path)

        self._set_state(state)

        if state == HealthState.HEALTHY:
            if self.counter.value:
                self.logger.ok("Device %s returned after %d repair attempt(s)", self.node_path, self.counter.value)
            self.counter.reset()
            await self._restore_services()
            return state

        await self._remediate(state)
        return state

    async def _remediate(self, state: HealthState) -> None:
        attempt = self.counter.increment()
        escalate = self.counter.exceeded
        self.logger.warning(
            "Device %s is %s (%s); repair attempt %d/%d",
            self.node_path,
            state.value,
            self.probe.last_detail or "no detail",
            attempt,
            self.policy.max_repair_attempts,
        )

        await self._stop_services()

        if not self.identity.has_hardware_id:
            self.logger.warning("No vendor:product id known; watching node only, restarting services")

        plan = build_plan(self.identity, escalate=escalate, hub_port=self.hub_port)
        self.last_report = await self.repair.run(plan)
        self.repair_count += 1

        if escalate:
            self.escalation_count += 1
            await self._log_escalation()
            self.logger.recovery("Cooling down for %.0fs before probing again", self.policy.escalation_cooldown)
            await self._sleep(self.policy.escalation_cooldown)
            self.counter.reset()

    async def _stop_services(self) -> None:
        for service in self.services:
            if await service.is_active():
                self.logger.info("Stopping %s before repair", service.name)
                if service not in self._stopped_services:
                    self._stopped_services.append(service)
                await service.stop()

    async def _restore_services(self) -> None:
        """Start services stopped for a repair that did not bring them back."""
        stopped, self._stopped_services = self._stopped_services, []
        for service in stopped:
            if await service.is_active():
                continue
            self.logger.recovery("%s still down after repair, starting it", service.name)
            try:
                started = await service.start()
            except Exception as exc:
                self.logger.warning("Starting %s raised: %s", service.name, exc)
                started = False
            if not started:
                self.logger.warning("Could not start %s; will retry on the next healthy probe", service.name)
                self._stopped_services.append(service)

    async def _log_escalation(self) -> None:
        vidpid = self.identity.vidpid
        self.logger.error(
            "Device %s still unhealthy after %d repair attempts; manual intervention needed",
            self.node_path,
            self.policy.max_repair_attempts,
        )
        if self.node_path:
            holders = await asyncio.to_thread(find_device_holders, self.node_path)
            for proc in holders:
                description = describe_process(proc)
                if description:
                    self.logger.error("  %s is held open by %s", self.node_path, description)

        steps = []
        if vidpid:
            steps.append(f"lsusb -d {vidpid}")
            repair_cmd = f"capguard repair --vidpid {vidpid} --escalate"
            if self.hub_port:
                repair_cmd += f" --hub {self.hub_port}"
            steps.append(repair_cmd)
        steps.append("sudo dmesg | tail -n 30")
        steps.extend(f"journalctl -u {service.name} -n 50" for service in self.services)
        steps.append("unplug and reconnect the capture device")
        for step in steps:
            self.logger.error("  try: %s", step)

    # ------------------------------------------------------------------
    # Loop lifecycle

    async def run(self) -> None:
        self.logger.info(
            "Watching %s every %.0fs (max %d repair attempts before escalation)",
            self.identity.describe(),
            self.policy.check_interval,
            self.policy.max_repair_attempts,
        )
        if not self.identity.has_hardware_id:
            self.logger.warning("VID:PID not provided; using device to watch only")

        while True:
            try:
                await self.probe_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Error in health check cycle: %s", e, exc_info=True)
            await self._sleep(self.policy.check_interval)

    def start(self) -> asyncio.Task:
        if self.is_running():
            return self._task
        self._task = create_logged_task(self.run(), logger=self.logger, context=self.name)
        if self.registry is not None:
            try:
                self.registry.register(TaskHandle(self.name, self._task))
            except RegistryError:
                self._task.cancel()
                raise
        return self._task

    async def stop(self) -> None:
        await cancel_and_wait(self._task)
        self._task = None
        if self.registry is not None:
            self.registry.unregister(self.name)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


__all__ = ["DeviceHealthMonitor", "MONITOR_NAME"]
