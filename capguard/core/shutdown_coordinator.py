"""
Shutdown Coordinator - Single point of control for graceful shutdown.

Cleanup runs exactly once whether the session ends normally, on SIGINT or on
SIGTERM: stop the health monitor, stop the bridging process, stop the
consumer, remove liveness and state records.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from .logging_utils import get_module_logger


class ShutdownState(Enum):
    """States of the shutdown process."""
    RUNNING = "running"
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ShutdownCoordinator:
    """
    Coordinates shutdown across all components.

    Shutdown sequence:
    1. Normal exit or a signal triggers shutdown via initiate_shutdown()
    2. State transitions to REQUESTED
    3. State transitions to IN_PROGRESS and cleanup callbacks run in order
    4. State transitions to COMPLETE
    """

    def __init__(self):
        self.logger = get_module_logger("ShutdownCoordinator")
        self._state = ShutdownState.RUNNING
        self._shutdown_event = asyncio.Event()
        self._cleanup_callbacks: list[Callable[[], Awaitable[None]]] = []
        self._lock = asyncio.Lock()
        self.source: Optional[str] = None

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def is_shutting_down(self) -> bool:
        return self._state in (ShutdownState.REQUESTED, ShutdownState.IN_PROGRESS)

    @property
    def is_complete(self) -> bool:
        return self._state == ShutdownState.COMPLETE

    def register_cleanup(self, callback: Callable[[], Awaitable[None]]) -> None:
        """
        Register a cleanup callback to be executed during shutdown.

        Callbacks are executed in the order they are registered.
        """
        self._cleanup_callbacks.append(callback)
        self.logger.debug("Registered cleanup callback: %s", _callback_name(callback))

    async def initiate_shutdown(self, source: str = "unknown") -> None:
        """
        Initiate graceful shutdown.

        If shutdown is already in progress, this call is a no-op.
        """
        shutdown_start = time.monotonic()

        async with self._lock:
            if self._state != ShutdownState.RUNNING:
                self.logger.debug("Shutdown already initiated (state=%s), ignoring request from %s",
                                  self._state.value, source)
                return

            self.logger.info("=" * 60)
            self.logger.info("SHUTDOWN INITIATED by: %s", source)
            self.logger.info("=" * 60)
            self._state = ShutdownState.REQUESTED
            self.source = source

        await self._execute_cleanup()

        async with self._lock:
            self._state = ShutdownState.COMPLETE
            self._shutdown_event.set()

        self.logger.info("Shutdown finished in %.3fs", time.monotonic() - shutdown_start)

    async def _execute_cleanup(self) -> None:
        async with self._lock:
            self._state = ShutdownState.IN_PROGRESS

        total = len(self._cleanup_callbacks)
        self.logger.info("Running %d cleanup callbacks...", total)

        for i, callback in enumerate(self._cleanup_callbacks, 1):
            name = _callback_name(callback)
            try:
                callback_start = time.monotonic()
                self.logger.debug("Starting cleanup %d/%d: %s", i, total, name)
                await callback()
                self.logger.debug("Completed %s in %.3fs", name, time.monotonic() - callback_start)
            except Exception as e:
                self.logger.error("Error in cleanup callback %s: %s", name, e, exc_info=True)

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()


def _callback_name(callback: Callable) -> str:
    return getattr(callback, "__name__", repr(callback))


_coordinator: Optional[ShutdownCoordinator] = None


def get_shutdown_coordinator() -> ShutdownCoordinator:
    """Get the global shutdown coordinator instance."""
    global _coordinator
    if _coordinator is None:
        _coordinator = ShutdownCoordinator()
    return _coordinator


def reset_shutdown_coordinator() -> None:
    """Reset the global coordinator (mainly for testing)."""
    global _coordinator
    _coordinator = None
