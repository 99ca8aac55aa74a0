"""Task registry for tracking and managing background asyncio tasks.

Every long-running task the daemon starts (per-session event pumps, per-connection
subscription forwarders, adapter readers) is spawned through a TaskRegistry so
it can be cancelled by key and drained on shutdown.
"""

from __future__ import annotations

import asyncio
from typing import Coroutine, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class TaskRegistry:
    """Registry for tracking background asyncio tasks.

    Tasks may be grouped under a key (typically a session id) so that all work
    belonging to one session can be cancelled together. Completed tasks are
    removed automatically.

    Example:
        registry = TaskRegistry()

        # Spawn tracked task
        task = registry.spawn(pump(session), name="pump", key=session_id)

        # Cancel everything for that session
        await registry.cancel(session_id)

        # Graceful shutdown
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()
        self._keyed: dict[str, set[asyncio.Task[object]]] = {}
        self._task_keys: dict[asyncio.Task[object], str] = {}

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        """Remove the task from the registry and log any exception it raised."""
        self._tasks.discard(task)
        key = self._task_keys.pop(task, None)
        if key is not None:
            group = self._keyed.get(key)
            if group is not None:
                group.discard(task)
                if not group:
                    del self._keyed[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.opt(exception=exc).error("Background task {} failed: {}", task.get_name(), exc)

    def spawn(
        self,
        coro: Coroutine[object, object, T],
        name: Optional[str] = None,
        key: Optional[str] = None,
    ) -> asyncio.Task[T]:
        """
        Spawn a tracked background task.

        Args:
            coro: Coroutine to execute as a background task
            name: Optional name for the task (useful for debugging)
            key: Optional group key used by `cancel()`

        Returns:
            The created asyncio.Task that is being tracked
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)  # type: ignore[arg-type]
        if key is not None:
            self._keyed.setdefault(key, set()).add(task)  # type: ignore[arg-type]
            self._task_keys[task] = key  # type: ignore[index]
        task.add_done_callback(self._on_task_done)  # type: ignore[arg-type]

        logger.trace(
            "Spawned tracked task: {} (total: {})",
            name or f"<unnamed-{id(task)}>",
            len(self._tasks),
        )
        return task

    async def cancel(self, key: str, timeout: float = 5.0) -> None:
        """Cancel every task registered under `key` and wait for them to finish."""
        tasks = [task for task in self._keyed.get(key, ()) if task is not asyncio.current_task()]
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("Cancel timeout: {} task(s) for {} still pending", len(pending), key)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """
        Cancel all tracked tasks and wait for them to complete.

        Args:
            timeout: Maximum time to wait for tasks to complete (seconds)
        """
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        if not tasks:
            logger.debug("No tasks to shutdown")
            return

        task_count = len(tasks)
        logger.info("Shutting down {} tracked tasks (timeout={:.1f}s)", task_count, timeout)

        for task in tasks:
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown timeout: {}/{} tasks still pending after {:.1f}s",
                len(pending),
                task_count,
                timeout,
            )
            for task in pending:
                logger.warning("Pending task: {}", task.get_name())
        else:
            logger.info("All {} tasks completed within timeout", task_count)

    def task_count(self, key: Optional[str] = None) -> int:
        """Number of active tasks, optionally restricted to one key."""
        if key is not None:
            return len(self._keyed.get(key, ()))
        return len(self._tasks)
