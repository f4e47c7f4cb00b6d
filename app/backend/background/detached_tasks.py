"""
Owner of fire-and-forget work (stale-cache refreshes, cost reconciliation).

Tasks are decoupled from the request that spawned them: a client disconnect
never cancels them, and their failures only ever reach the logger. Strong
references are held until each task finishes so the event loop cannot
garbage-collect a task mid-flight.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class DetachedTasks:
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(
        self,
        coro: Awaitable,
        name: str,
        on_done: Optional[Callable[[], None]] = None,
    ) -> asyncio.Task:
        """
        Schedule coro on the running loop and return immediately.
        on_done runs when the task ends for any reason, including cancellation
        before it ever started.
        """
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)

        def _finished(t: asyncio.Task):
            self._tasks.discard(t)
            if on_done is not None:
                on_done()
            if t.cancelled():
                logger.info("Background task %s cancelled", name)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Background task %s failed: %r", name, exc, exc_info=exc)

        task.add_done_callback(_finished)
        return task

    async def drain(self, timeout: Optional[float] = None):
        """Wait for every pending task. Used at shutdown and in tests."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                # let done-callbacks of just-finished tasks run
                await asyncio.sleep(0)
                return
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("%d background task(s) still running after %ss", len(not_done), timeout)
                for t in not_done:
                    t.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                return

    def __len__(self) -> int:
        return len(self._tasks)
