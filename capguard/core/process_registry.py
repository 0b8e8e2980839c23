"""Process registry: one liveness handle per spawned process or loop task.

Handles live in memory for the running session. Each registration is also
written to ``<state_dir>/<name>.json`` so that a later session can find and
terminate processes left behind by a launcher that died without cleanup.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

from .logging_utils import get_module_logger
from .orphan_cleanup import cmdline_matches, terminate_processes
from .paths import STREAM_STATE_FILENAME


class RegistryError(RuntimeError):
    """A second live handle was registered under an existing name."""


class ProcessHandle(ABC):
    """Opaque identifier plus a liveness check for one managed process."""

    kind = "process"

    def __init__(self, name: str, pid: int, signature: Sequence[str] = ()) -> None:
        self.name = name
        self.pid = pid
        self.signature = list(signature)
        self.started_at = time.time()

    @abstractmethod
    def is_alive(self) -> bool:
        ...

    def __repr__(self) -> str:
        state = "alive" if self.is_alive() else "stopped"
        return f"{type(self).__name__}(name={self.name!r}, pid={self.pid}, {state})"


class SubprocessHandle(ProcessHandle):
    """Handle for an OS child process started with asyncio."""

    kind = "subprocess"

    def __init__(self, name: str, process: asyncio.subprocess.Process, signature: Sequence[str] = ()) -> None:
        super().__init__(name, process.pid, signature)
        self.process = process

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_alive(self) -> bool:
        return self.process.returncode is None


class TaskHandle(ProcessHandle):
    """Handle for a supervision loop running as an asyncio task."""

    kind = "task"

    def __init__(self, name: str, task: asyncio.Task) -> None:
        super().__init__(name, os.getpid(), (task.get_name(),))
        self.task = task

    def is_alive(self) -> bool:
        return not self.task.done()


@dataclass
class LivenessRecord:
    name: str
    pid: int
    kind: str
    owner_pid: int
    signature: List[str] = field(default_factory=list)
    started_at: float = 0.0

    @classmethod
    def from_handle(cls, handle: ProcessHandle) -> "LivenessRecord":
        return cls(
            name=handle.name,
            pid=handle.pid,
            kind=handle.kind,
            owner_pid=os.getpid(),
            signature=list(handle.signature),
            started_at=handle.started_at,
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "LivenessRecord":
        return cls(
            name=str(data["name"]),
            pid=int(data["pid"]),
            kind=str(data.get("kind", "subprocess")),
            owner_pid=int(data.get("owner_pid", 0)),
            signature=[str(token) for token in data.get("signature", [])],
            started_at=float(data.get("started_at", 0.0)),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


class ProcessRegistry:
    """Tracks the liveness of every process and loop the supervisor owns."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self.logger = get_module_logger("ProcessRegistry")
        self._handles: Dict[str, ProcessHandle] = {}

    # ------------------------------------------------------------------
    # Handles

    def register(self, handle: ProcessHandle) -> None:
        existing = self._handles.get(handle.name)
        if existing is not None and existing is not handle and existing.is_alive():
            raise RegistryError(f"'{handle.name}' is already running (pid {existing.pid})")

        self._handles[handle.name] = handle
        self._write_record(LivenessRecord.from_handle(handle))
        self.logger.debug("Registered %s (pid %d, %s)", handle.name, handle.pid, handle.kind)

    def unregister(self, name: str) -> Optional[ProcessHandle]:
        handle = self._handles.pop(name, None)
        self._record_path(name).unlink(missing_ok=True)
        if handle is not None:
            self.logger.debug("Unregistered %s (pid %d)", name, handle.pid)
        return handle

    def get(self, name: str) -> Optional[ProcessHandle]:
        return self._handles.get(name)

    def is_alive(self, name: str) -> bool:
        handle = self._handles.get(name)
        return handle is not None and handle.is_alive()

    def names(self) -> List[str]:
        return sorted(self._handles)

    def live_handles(self) -> List[ProcessHandle]:
        return [handle for handle in self._handles.values() if handle.is_alive()]

    # ------------------------------------------------------------------
    # Persisted records

    def _record_path(self, name: str) -> Path:
        return self.state_dir / f"{name}.json"

    def _write_record(self, record: LivenessRecord) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._record_path(record.name)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def records(self) -> List[LivenessRecord]:
        if not self.state_dir.is_dir():
            return []

        found = []
        for path in sorted(self.state_dir.glob("*.json")):
            if path.name == STREAM_STATE_FILENAME:
                continue
            try:
                found.append(LivenessRecord.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as exc:
                self.logger.warning("Unreadable liveness record %s: %s", path, exc)
        return found

    def sweep_stale(self, timeout: float = 2.0) -> int:
        """Remove records left by a previous session whose owner is gone.

        A recorded subprocess that is still alive is terminated only when its
        command line still matches the recorded signature, so a recycled pid
        is never signalled. Returns the number of processes terminated.
        """
        terminated = 0
        current_pid = os.getpid()

        for record in self.records():
            if record.owner_pid == current_pid and record.name in self._handles:
                continue
            if record.owner_pid != current_pid and psutil.pid_exists(record.owner_pid):
                self.logger.debug("Record %s still owned by live pid %d", record.name, record.owner_pid)
                continue

            if record.kind == SubprocessHandle.kind and psutil.pid_exists(record.pid):
                try:
                    proc = psutil.Process(record.pid)
                    if cmdline_matches(proc.cmdline(), record.signature):
                        self.logger.warning("Terminating stale %s (pid %d)", record.name, record.pid)
                        terminated += terminate_processes([proc], timeout=timeout)
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as exc:
                    self.logger.debug("Stale %s (pid %d) not signalled: %s", record.name, record.pid, exc)

            self._record_path(record.name).unlink(missing_ok=True)
            self.logger.info("Removed stale liveness record: %s", record.name)

        return terminated

    def clear(self) -> None:
        """Forget every handle and delete every liveness record."""
        self._handles.clear()
        if not self.state_dir.is_dir():
            return
        for path in self.state_dir.glob("*.json"):
            if path.name == STREAM_STATE_FILENAME:
                continue
            path.unlink(missing_ok=True)


__all__ = [
    "ProcessHandle",
    "SubprocessHandle",
    "TaskHandle",
    "LivenessRecord",
    "ProcessRegistry",
    "RegistryError",
]
