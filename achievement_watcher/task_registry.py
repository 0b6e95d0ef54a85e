"""
Task Registry for watcher/notification background tasks.

Tasks are grouped by owner (a game config name, a notification lane) so a
single game's work can be cancelled on detach while shutdown still cancels
everything.
"""

import asyncio
import threading
from collections import defaultdict

from achievement_watcher.logger import setup_logger

logger = setup_logger()

_registry_lock = threading.Lock()
_tasks_by_owner: dict[str, list[asyncio.Task]] = defaultdict(list)
_shutdown_in_progress = False


def register_task(task: asyncio.Task, owner: str = "") -> asyncio.Task:
    """Track a background task under an owner.

    Args:
        task: The asyncio.Task to track
        owner: Group the task belongs to

    Returns:
        The same task (for chaining)
    """
    with _registry_lock:
        if _shutdown_in_progress:
            logger.warning(f"Task for '{owner}' created during shutdown - cancelling immediately")
            task.cancel()
            return task

        tasks = _tasks_by_owner[owner]
        tasks[:] = [t for t in tasks if not t.done()]
        tasks.append(task)
    return task


def reset_shutdown_state() -> None:
    """Clear every tracked task and the shutdown flag."""
    global _shutdown_in_progress
    with _registry_lock:
        _shutdown_in_progress = False
        _tasks_by_owner.clear()


def get_active_task_count(owner: str | None = None) -> int:
    with _registry_lock:
        groups = [_tasks_by_owner.get(owner, [])] if owner is not None else list(_tasks_by_owner.values())
        return sum(1 for tasks in groups for t in tasks if not t.done())


def cancel_owner_tasks(owner: str) -> int:
    """Request cancellation of one owner's tasks without waiting.

    Returns:
        Number of tasks that were still running
    """
    with _registry_lock:
        tasks = _tasks_by_owner.pop(owner, [])
    pending = [t for t in tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        logger.debug(f"Cancelled {len(pending)} task(s) for {owner}")
    return len(pending)


async def cancel_all_tasks(timeout: float = 3.0) -> int:
    """Cancel all registered background tasks.

    Args:
        timeout: Maximum time to wait for task cancellation

    Returns:
        Number of tasks cancelled
    """
    global _shutdown_in_progress

    with _registry_lock:
        _shutdown_in_progress = True
        tasks = [t for group in _tasks_by_owner.values() for t in group]
        _tasks_by_owner.clear()

    if not tasks:
        return 0

    for task in tasks:
        if not task.done():
            task.cancel()

    try:
        await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Some tasks did not complete within {timeout}s timeout")

    cancelled = sum(1 for t in tasks if t.cancelled())
    logger.info(f"Cancelled {cancelled}/{len(tasks)} background tasks")
    return cancelled
