"""Error taxonomy shared by the supervision loops.

Device errors are recovered inside the health monitor, repair step errors are
logged and the ladder moves on, bridge deaths are warnings. Only
``RecoveryThresholdExceeded`` and ``PreflightFailed`` reach the operator.
"""

from __future__ import annotations

from typing import Optional, Sequence


class CapguardError(Exception):
    """Base class for every capguard error."""


# ---------------------------------------------------------------------------
# Device health

class DeviceHealthError(CapguardError):

    def __init__(self, node_path: str, detail: str = "") -> None:
        self.node_path = node_path
        self.detail = detail
        message = f"{node_path}: {detail}" if detail else node_path
        super().__init__(message)


class DeviceAbsent(DeviceHealthError):
    """The device node is missing or is not a character device."""


class DeviceUnresponsive(DeviceHealthError):
    """The node exists but the capability query failed."""


# ---------------------------------------------------------------------------
# Repair ladder steps

class RepairStepFailed(CapguardError):
    step = "repair"


class ResetFailed(RepairStepFailed):
    step = "soft_reset"


class RebindFailed(RepairStepFailed):
    step = "driver_rebind"


class HubCycleUnavailable(RepairStepFailed):
    """No hub port configured, or no power-control tool installed."""
    step = "hub_power_cycle"


class HubCycleFailed(RepairStepFailed):
    step = "hub_power_cycle"


# ---------------------------------------------------------------------------
# Process supervision

class BridgingProcessDied(CapguardError):
    """The bridging process is gone.

    ``started`` is False when the process could not be spawned at all and True
    when it was spawned and exited afterwards.
    """

    def __init__(self, message: str, *, started: bool, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.started = started
        self.exit_code = exit_code


class ConsumerCrashed(CapguardError):

    def __init__(self, exit_code: int, crash_count: int) -> None:
        super().__init__(f"consumer exited with code {exit_code} (crash {crash_count})")
        self.exit_code = exit_code
        self.crash_count = crash_count


class RecoveryThresholdExceeded(CapguardError):
    """Fatal: the consumer kept crashing past the configured threshold."""

    def __init__(
        self,
        what: str,
        crash_count: int,
        threshold: int,
        last_exit_code: int,
        next_steps: Sequence[str] = (),
    ) -> None:
        super().__init__(f"{what} crashed {crash_count} times (threshold {threshold})")
        self.what = what
        self.crash_count = crash_count
        self.threshold = threshold
        self.last_exit_code = last_exit_code
        self.next_steps = list(next_steps)

    def summary_lines(self) -> list[str]:
        lines = [
            f"{self.what} crashed {self.crash_count} times "
            f"(last exit code {self.last_exit_code}, threshold {self.threshold}).",
            "Requiring user intervention. Common causes and what to check:",
        ]
        lines.extend(f"  - {step}" for step in self.next_steps)
        return lines


class PreflightFailed(CapguardError):
    """A required tool, directory or device is missing before any loop starts."""

    def __init__(self, message: str, hints: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.hints = list(hints)


__all__ = [
    "CapguardError",
    "DeviceHealthError",
    "DeviceAbsent",
    "DeviceUnresponsive",
    "RepairStepFailed",
    "ResetFailed",
    "RebindFailed",
    "HubCycleUnavailable",
    "HubCycleFailed",
    "BridgingProcessDied",
    "ConsumerCrashed",
    "RecoveryThresholdExceeded",
    "PreflightFailed",
]
