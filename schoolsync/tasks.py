"""Detached background tasks with their own error channel.

Background cloud pushes, durable cache writes and listener callbacks are not
awaited by the code that starts them. Each one is registered here so that:
- a strong reference keeps it alive until it finishes
- its failure is logged exactly once from the done-callback
- shutdown and tests can wait for (or cancel) everything still in flight
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[str, BaseException], None]


class BackgroundTasks:
    """Registry of fire-and-forget asyncio tasks."""

    def __init__(self, on_error: Optional[ErrorHandler] = None):
        self._tasks: Set[asyncio.Task] = set()
        self._on_error = on_error
        self.failures: List[str] = []

    @property
    def pending(self) -> int:
        """Number of tasks still in flight."""
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        """Schedule coro on the running loop and observe its outcome.

        Raises:
            RuntimeError: No event loop is running; coro is closed unscheduled.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background task {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is None:
            return
        name = task.get_name()
        self.failures.append(name)
        logger.error(
            f"Background task {name} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        if self._on_error is not None:
            try:
                self._on_error(name, exc)
            except Exception as handler_exc:
                logger.warning(f"Background error handler raised: {handler_exc}")

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every task (including ones spawned meanwhile) is done."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            await asyncio.wait(list(self._tasks), timeout=remaining)
            # let done-callbacks of just-finished tasks run
            await asyncio.sleep(0)
            if self._tasks and deadline is not None and loop.time() >= deadline:
                logger.warning(
                    f"{len(self._tasks)} background tasks still running after join timeout"
                )
                return

    async def cancel_all(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
