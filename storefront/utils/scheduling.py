"""Small asyncio scheduling helpers: throttling, debouncing and delayed tasks."""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class Throttle:
    """Allow an action at most once per ``interval`` seconds."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        """Return True (and start a new interval) when the action may run now."""
        now = self._clock()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True

    def reset(self) -> None:
        self._last = None


class TaskGroup:
    """
    Tracks fire-and-forget tasks so they can be awaited or cancelled together.

    Failures are logged, never raised into the loop's exception handler.
    """

    def __init__(self, name: str = 'background'):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, delay: float = 0) -> asyncio.Task:
        task = asyncio.ensure_future(self._run(coro, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Awaitable, delay: float):
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            return await coro
        except asyncio.CancelledError:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise
        except Exception as e:
            logger.exception(f"[{self.name.upper()}] Task failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every task spawned so far (and those they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class Debouncer:
    """Run only the last of a burst of calls, ``delay`` seconds after it."""

    def __init__(self, delay: float, group: TaskGroup):
        self.delay = delay
        self._group = group
        self._task: Optional[asyncio.Task] = None

    def call(self, factory: Callable[[], Awaitable]) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = self._group.spawn(self._invoke(factory), delay=self.delay)
        return self._task

    @staticmethod
    async def _invoke(factory: Callable[[], Awaitable]):
        return await factory()
