"""
Execution pool.

A fixed number of slots, each running one unit of work as an asyncio task.
There is no backlog: posting to a saturated pool fails immediately so that
back pressure stays with the poller.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from jobmill.exceptions import ConfigurationError, PoolSaturatedError, PoolShutdownError

logger = logging.getLogger(__name__)

WorkUnit = Callable[[], Awaitable[Any]]


class Pool:
    """
    Bounded set of concurrent execution slots.

    Must be used from within a running event loop.
    """

    def __init__(self, size: int, on_idle: Callable[[], None] | None = None):
        """
        Args:
            size: Number of slots.
            on_idle: Called every time a slot becomes idle.
        """
        if size < 1:
            raise ConfigurationError("Pool size must be at least 1.")
        self.size = size
        self.on_idle = on_idle
        self._busy = 0
        self._accepting = True
        self._tasks: set[asyncio.Task[None]] = set()
        self._drained = asyncio.Event()
        self._drained.set()
        self._terminated = asyncio.Event()

    @property
    def busy(self) -> int:
        return self._busy

    @property
    def idle(self) -> int:
        """Number of slots that can take work right now."""
        return self.size - self._busy

    @property
    def accepting(self) -> bool:
        return self._accepting

    def post(self, unit: WorkUnit) -> asyncio.Task[None]:
        """
        Run a unit of work in an idle slot.

        Args:
            unit: Coroutine function taking no arguments.

        Returns:
            The task running the unit.

        Raises:
            PoolShutdownError: If the pool has been shut down.
            PoolSaturatedError: If all slots are busy.
        """
        if not self._accepting:
            raise PoolShutdownError("Pool has been shut down.")
        if self.idle <= 0:
            raise PoolSaturatedError("All execution slots are busy.")

        self._busy += 1
        self._drained.clear()
        task = asyncio.create_task(self._run(unit))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, unit: WorkUnit) -> None:
        try:
            await unit()
        except Exception:
            logger.exception("Work unit raised an exception")
        finally:
            self._busy -= 1
            if self._busy == 0:
                self._drained.set()
            if self.on_idle is not None:
                try:
                    self.on_idle()
                except Exception:
                    logger.exception("Pool idle callback failed")

    async def drain(self) -> None:
        """Block until no slot is busy."""
        await self._drained.wait()

    async def wait(self) -> None:
        """Block until the pool has been shut down and drained."""
        await self._terminated.wait()

    async def shutdown(self) -> None:
        """Stop accepting work and wait for in-flight units. Never cancels them."""
        self._accepting = False
        await self.drain()
        self._terminated.set()
