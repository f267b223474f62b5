# carindex/utils/async_helpers.py
"""
Async utilities for safe task management.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)

# Strong references to running background tasks. The event loop only keeps
# weak references, so an unreferenced task can be garbage collected mid-flight.
_background_tasks: Set[asyncio.Task] = set()


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log_errors: bool = True
) -> asyncio.Task:
    """
    Create an asyncio task that is kept alive until it finishes and whose
    unhandled exception is logged instead of silently dropped.

    Args:
        coro: The coroutine to run as a task
        name: Optional name for the task (for logging)
        log_errors: Whether to log errors (default True)

    Returns:
        The created asyncio.Task
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _handle_exception(t: asyncio.Task):
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc and log_errors:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task
