"""
Detached background tasks.

Side effects that must never fail their caller (monitor injection, fragment
record updates) run as tasks whose exceptions are logged by a done-callback.
Callers never await them.
"""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected
_background_tasks: set[asyncio.Task] = set()


def _log_task_result(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"[Background] Task {task.get_name()} failed: {exc!r}")


def spawn_background(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Schedule a coroutine without joining it; failures go to the log."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_log_task_result)
    return task


def pending_background_tasks() -> list[asyncio.Task]:
    return [task for task in _background_tasks if not task.done()]


async def drain_background(timeout: float = 10.0) -> None:
    """Wait briefly for pending tasks at shutdown, then cancel the rest."""
    pending = pending_background_tasks()
    if not pending:
        return
    done, still_pending = await asyncio.wait(pending, timeout=timeout)
    for task in still_pending:
        task.cancel()
    if still_pending:
        logger.info(f"[Background] Cancelled {len(still_pending)} pending tasks at shutdown")
