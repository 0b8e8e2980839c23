"""
Escalating repair controller.

A repair plan is a linear ladder of increasingly invasive steps for one
device:

1. soft_reset       - usbdevfs reset of the device handle
2. driver_rebind    - unbind and rebind the kernel driver
3. hub_power_cycle  - escalated plans only, needs a hub port and uhubctl
4. service_restart  - restart every dependent service

Every step is best-effort. A failed step is logged and the ladder moves on,
and the service restart is always attempted when it is part of the plan.
The controller never loops; retry and escalation policy belongs to the
caller (the device health monitor or the ``capguard repair`` command).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .devices.identity import DeviceIdentity
from .errors import HubCycleUnavailable, RepairStepFailed
from .hardware.controller import HardwareController
from .logging_utils import LoggerLike, ensure_structured_logger
from .services import DependentService

STEP_SOFT_RESET = "soft_reset"
STEP_DRIVER_REBIND = "driver_rebind"
STEP_HUB_POWER_CYCLE = "hub_power_cycle"
STEP_SERVICE_RESTART = "service_restart"

LADDER = (STEP_SOFT_RESET, STEP_DRIVER_REBIND, STEP_HUB_POWER_CYCLE, STEP_SERVICE_RESTART)


@dataclass(frozen=True)
class RepairPlan:
    identity: DeviceIdentity
    steps: Tuple[str, ...]
    hub_port: Optional[str] = None
    escalated: bool = False


def build_plan(
    identity: DeviceIdentity,
    escalate: bool = False,
    hub_port: Optional[str] = None,
    restart_services: bool = True,
) -> RepairPlan:
    """Build the ladder for ``identity``.

    Without a vendor:product id only the service restart remains ("watch node
    only" mode). The hub power cycle is included only when escalating.
    """
    steps: List[str] = []
    if identity.has_hardware_id:
        steps.extend([STEP_SOFT_RESET, STEP_DRIVER_REBIND])
        if escalate:
            steps.append(STEP_HUB_POWER_CYCLE)
    if restart_services:
        steps.append(STEP_SERVICE_RESTART)
    return RepairPlan(identity=identity, steps=tuple(steps), hub_port=hub_port, escalated=escalate)


@dataclass
class StepResult:
    step: str
    ok: bool
    skipped: bool = False
    detail: str = ""

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "ok" if self.ok else "failed"


@dataclass
class RepairReport:
    plan: RepairPlan
    results: List[StepResult] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def attempted(self) -> List[str]:
        return [result.step for result in self.results if not result.skipped]

    @property
    def succeeded(self) -> bool:
        """True when at least one step ran and every step that ran succeeded."""
        ran = [result for result in self.results if not result.skipped]
        return bool(ran) and all(result.ok for result in ran)

    def result(self, step: str) -> Optional[StepResult]:
        for result in self.results:
            if result.step == step:
                return result
        return None

    def lines(self) -> List[str]:
        header = f"Repair of {self.plan.identity.describe()}"
        if self.plan.escalated:
            header += " (escalated)"
        lines = [header]
        for index, result in enumerate(self.results, 1):
            line = f"  {index}. {result.step:<16} {result.status}"
            if result.detail:
                line += f"  {result.detail}"
            lines.append(line)
        return lines


class RepairController:
    """Runs repair plans one at a time."""

    def __init__(
        self,
        hardware: HardwareController,
        services: Sequence[DependentService] = (),
        *,
        logger: LoggerLike = None,
    ) -> None:
        self.hardware = hardware
        self.services = list(services)
        self.logger = ensure_structured_logger(logger, fallback_name="RepairController")
        self._lock = asyncio.Lock()
        self.history: List[RepairReport] = []

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, plan: RepairPlan) -> RepairReport:
        async with self._lock:
            report = RepairReport(plan=plan)
            total = len(plan.steps)
            self.logger.recovery(
                "Starting repair of %s: %s",
                plan.identity.describe(),
                " -> ".join(plan.steps) or "nothing to do",
            )

            for index, step in enumerate(plan.steps, 1):
                self.logger.recovery("Step %d/%d: %s", index, total, step)
                result = await self._run_step(step, plan)
                report.results.append(result)
                if result.ok:
                    self.logger.ok("%s: %s", step, result.detail or "done")

            report.finished_at = time.time()
            self.history.append(report)
            self.logger.recovery(
                "Repair finished in %.1fs (%s)",
                report.finished_at - report.started_at,
                ", ".join(f"{r.step}={r.status}" for r in report.results) or "no steps",
            )
            return report

    async def _run_step(self, step: str, plan: RepairPlan) -> StepResult:
        try:
            if step == STEP_SOFT_RESET:
                detail = await self.hardware.soft_reset(plan.identity)
            elif step == STEP_DRIVER_REBIND:
                detail = await self.hardware.rebind(plan.identity)
            elif step == STEP_HUB_POWER_CYCLE:
                detail = await self.hardware.power_cycle(plan.hub_port)
            elif step == STEP_SERVICE_RESTART:
                return await self._restart_services()
            else:
                raise ValueError(f"Unknown repair step '{step}'")
        except HubCycleUnavailable as exc:
            self.logger.warning("%s skipped: %s", step, exc)
            return StepResult(step, ok=False, skipped=True, detail=str(exc))
        except RepairStepFailed as exc:
            self.logger.warning("%s failed: %s", step, exc)
            return StepResult(step, ok=False, detail=str(exc))
        except Exception as exc:
            self.logger.warning("%s failed unexpectedly: %s", step, exc, exc_info=True)
            return StepResult(step, ok=False, detail=f"{type(exc).__name__}: {exc}")
        return StepResult(step, ok=True, detail=detail)

    async def _restart_services(self) -> StepResult:
        if not self.services:
            return StepResult(STEP_SERVICE_RESTART, ok=False, skipped=True, detail="no dependent services")

        failed = []
        for service in self.services:
            try:
                restarted = await service.restart()
            except Exception as exc:
                self.logger.warning("Restarting %s raised: %s", service.name, exc, exc_info=True)
                restarted = False
            if restarted:
                self.logger.recovery("Restarted %s", service.name)
            else:
                failed.append(service.name)

        if failed:
            return StepResult(STEP_SERVICE_RESTART, ok=False, detail=f"failed: {', '.join(failed)}")
        return StepResult(
            STEP_SERVICE_RESTART,
            ok=True,
            detail=f"restarted {', '.join(service.name for service in self.services)}",
        )


__all__ = [
    "LADDER",
    "RepairController",
    "RepairPlan",
    "RepairReport",
    "StepResult",
    "STEP_DRIVER_REBIND",
    "STEP_HUB_POWER_CYCLE",
    "STEP_SERVICE_RESTART",
    "STEP_SOFT_RESET",
    "build_plan",
]
