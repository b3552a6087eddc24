import asyncio
import logging
from typing import Callable, Coroutine, List, Optional

logger = logging.getLogger("market.payments")


class CancellationToken:
    """Set once; every task and timer registered on the owning scheduler stops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class Scheduler:
    """
    Owns the background work of one payment session: spawned tasks and
    one-shot timers. ``shutdown()`` cancels all of it together.
    """

    def __init__(self) -> None:
        self.token = CancellationToken()
        self._tasks: List[asyncio.Task] = []
        self._timers: List[asyncio.TimerHandle] = []

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        if self.token.cancelled:
            coro.close()
            raise RuntimeError("scheduler already shut down")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.append(task)
        task.add_done_callback(self._reap)
        return task

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        if self.token.cancelled:
            raise RuntimeError("scheduler already shut down")

        def fire() -> None:
            if handle in self._timers:
                self._timers.remove(handle)
            callback()

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.append(handle)
        return handle

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def shutdown(self) -> None:
        """
        Cancel timers and tasks. The task calling this (if it is one of ours)
        is left running so it can finish its own work.
        """
        self.token.cancel()
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    @property
    def active(self) -> int:
        """Number of pending timers and unfinished tasks."""
        timers = sum(1 for h in self._timers if not h.cancelled())
        return timers + sum(1 for t in self._tasks if not t.done())

    def _reap(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background payment task crashed", exc_info=task.exception())
