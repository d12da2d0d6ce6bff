from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger("tcptunnel.lifecycle")


class StopSignal:
    """
    Single-fire stop notification shared by the supervisor, sessions and pumps.

    trigger() fires at most once; later calls return False and change nothing.
    Any number of tasks may wait() on it, and is_set() never blocks.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_set(self) -> bool:
        return self._event.is_set()

    def trigger(self, reason: str = "stop") -> bool:
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class TaskPool:
    """
    Tracks every outstanding session and pump task.

    Each spawned task is removed exactly once, from its done-callback, so the
    count stays right on success, error and cancellation alike.
    """

    def __init__(self, name: str = "pool", log: Optional[logging.Logger] = None) -> None:
        self.name = name
        self.logger = log or logger
        self._tasks: Set[asyncio.Task] = set()
        self.spawned = 0

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        self.spawned += 1
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("%s: task %s failed: %s", self.name, task.get_name(), exc, exc_info=exc)

    async def wait_all(self, timeout: Optional[float]) -> bool:
        """
        Wait until no task is outstanding, including tasks spawned while waiting.
        Returns False if the timeout elapsed first; remaining tasks keep running.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + max(0.0, timeout)
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True
