"""
carindex/engine/scheduler.py
Bounded-concurrency task scheduler with fail-fast semantics.

Runs zero-argument async callables with at most ``concurrency`` of them in
flight at once.

Rules:

  - Nothing runs until the first submit(). There is no background loop.
  - Tasks start in submission (FIFO) order. They may finish in any order, and
    each finish frees a slot for the next queued task.
  - The first failure is captured and kept for the scheduler's lifetime. Queued
    tasks are dropped, later submit() calls are ignored, and tasks already
    running are left to finish (their results still reach on_task_complete).
  - Failures never escape submit() or the scheduler internals. They are only
    reported through await_completion().
  - await_completion() returns once the queue is empty, nothing is running and
    every on_task_complete invocation triggered so far has settled.

Usage:
    scheduler = TaskScheduler(concurrency=4, on_task_complete=log_result)
    for block in blocks:
        scheduler.submit(lambda block=block: handle(block))
    result = await scheduler.await_completion()
    if result.error:
        raise result.error

Only one caller may wait on await_completion() at a time.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from carindex.errors import ErrorCode, IndexerError
from carindex.utils.async_helpers import create_safe_task

logger = logging.getLogger(__name__)

SchedulerTask = Callable[[], Awaitable[Any]]
TaskCallback = Callable[[Any], Any]


@dataclass(frozen=True)
class SchedulerResult:
    """Outcome of a drained scheduler. ``error`` is the first captured failure."""

    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TaskScheduler:
    """Bounded FIFO executor owned by a single consumer."""

    def __init__(
        self,
        concurrency: int = 1,
        on_task_complete: Optional[TaskCallback] = None,
        name: str = "scheduler",
    ) -> None:
        if concurrency < 1:
            raise IndexerError(
                ErrorCode.CONFIG_INVALID,
                "Scheduler concurrency must be at least 1",
                details={"concurrency": concurrency},
            )
        self.concurrency = concurrency
        self.name = name
        self._on_task_complete = on_task_complete

        self._queue: Deque[SchedulerTask] = deque()
        self._running = 0
        self._callbacks_outstanding = 0
        self._error: Optional[BaseException] = None
        self._changed = asyncio.Condition()
        self._started = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def running(self) -> int:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def started(self) -> int:
        """Number of tasks started so far."""
        return self._started

    def _idle(self) -> bool:
        return not self._queue and self._running == 0 and self._callbacks_outstanding == 0

    def _has_slot(self) -> bool:
        return self._error is not None or (not self._queue and self._running < self.concurrency)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, task: SchedulerTask) -> None:
        """Queue task, starting it right away if a slot is free."""
        if self._error is not None:
            return
        self._queue.append(task)
        self._pump()

    async def wait_for_slot(self) -> None:
        """
        Suspend until a newly submitted task would start immediately, or until
        a failure has been captured. Lets a producer throttle itself instead of
        growing the queue without bound.
        """
        async with self._changed:
            await self._changed.wait_for(self._has_slot)

    async def await_completion(self) -> SchedulerResult:
        """Wait for the queue, the running tasks and their callbacks to drain."""
        async with self._changed:
            await self._changed.wait_for(self._idle)
        return SchedulerResult(error=self._error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        while self._error is None and self._queue and self._running < self.concurrency:
            task = self._queue.popleft()
            self._running += 1
            self._started += 1
            create_safe_task(self._run(task), name=f"{self.name}-task-{self._started}")

    def _capture(self, exc: BaseException) -> None:
        if self._error is not None:
            return
        self._error = exc
        dropped = len(self._queue)
        self._queue.clear()
        logger.debug(f"[TaskScheduler:{self.name}] Captured failure, dropped {dropped} queued task(s): {exc!r}")

    async def _run(self, task: SchedulerTask) -> None:
        try:
            result = await task()
        except Exception as exc:
            self._capture(exc)
        else:
            self._complete(result)
        finally:
            self._running -= 1
            self._pump()
            await self._notify()

    def _complete(self, result: Any) -> None:
        if self._on_task_complete is None:
            return
        try:
            outcome = self._on_task_complete(result)
        except Exception as exc:
            self._capture(exc)
            return
        if inspect.isawaitable(outcome):
            self._callbacks_outstanding += 1
            create_safe_task(self._settle_callback(outcome), name=f"{self.name}-callback")

    async def _settle_callback(self, outcome: Awaitable[Any]) -> None:
        try:
            await outcome
        except Exception as exc:
            self._capture(exc)
        finally:
            self._callbacks_outstanding -= 1
            await self._notify()

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()
