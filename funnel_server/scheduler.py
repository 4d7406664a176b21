"""Keyed asyncio timers for deferred funnel work."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class TaskScheduler:
    """Runs ``callback`` after ``delay`` seconds, at most one pending task per key.

    Scheduling an occupied key cancels the task already there, except when the
    caller is that very task (a step continuation scheduling the next one).
    """

    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, callback: Callback) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        return task

    def cancel(self, key: str) -> bool:
        task = self._tasks.get(key)
        if task is None:
            return False
        if task is asyncio.current_task():
            self._tasks.pop(key, None)
            return False
        self._tasks.pop(key, None)
        task.cancel()
        return True

    def cancel_all(self) -> int:
        current = asyncio.current_task()
        cancelled = 0
        for task in list(self._tasks.values()):
            if task is not current and not task.done():
                task.cancel()
                cancelled += 1
        self._tasks.clear()
        return cancelled

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    async def drain(self) -> None:
        """Wait until no task is pending, including tasks scheduled meanwhile."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run(self, key: str, delay: float, callback: Callback) -> None:
        try:
            if delay > 0:
                await self._sleep(delay)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:  # pylint: disable=broad-except
            logger.exception("Scheduled task %s failed", key)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                self._tasks.pop(key, None)

    def __len__(self) -> int:
        return len(self._tasks)
