"""Asyncio helpers for the long-running supervision loops."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Optional

from .logging_utils import LoggerLike, ensure_structured_logger


def _task_label(task: asyncio.Task[Any], context: Optional[str]) -> str:
    if context:
        return context
    name = task.get_name()
    return name or "background task"


def add_task_exception_logger(
    task: asyncio.Task[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Ensure task exceptions are retrieved and logged.

    A loop task that dies silently would otherwise only be noticed through
    the registry liveness check, long after the original failure.
    """
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")

    def _done(done_task: asyncio.Task[Any]) -> None:
        if done_task.cancelled():
            return
        exc = done_task.exception()
        if exc is not None:
            task_logger.error(
                "Unhandled exception in %s: %s",
                _task_label(done_task, context),
                exc,
                exc_info=exc,
            )

    task.add_done_callback(_done)
    return task


def create_logged_task(
    coro: Awaitable[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    pending: Optional[set[asyncio.Task[Any]]] = None,
) -> asyncio.Task[Any]:
    """Create a task that won't lose exceptions, optionally tracking it."""
    if loop is None:
        loop = asyncio.get_running_loop()

    task = loop.create_task(coro)
    if context:
        task.set_name(context)

    add_task_exception_logger(task, logger=logger, context=context)

    if pending is not None:
        pending.add(task)
        task.add_done_callback(pending.discard)

    return task


async def cancel_and_wait(task: Optional[asyncio.Task[Any]], timeout: float = 5.0) -> None:
    """Cancel ``task`` and wait for it to finish unwinding."""
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)


__all__ = ["add_task_exception_logger", "create_logged_task", "cancel_and_wait"]
