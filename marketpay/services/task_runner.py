"""
Background task runner: fire-and-forget work scheduled from request paths.

Each scheduled job becomes an asyncio task that optionally sleeps first,
runs once, logs any failure and removes itself from the active set. Jobs are
never retried and cannot be cancelled by their caller. The runner itself can
be drained (tests, shutdown) or cancelled as a whole.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[object]]


class TaskRunner:
    """Tracks scheduled asyncio jobs so they stay observable."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        Args:
            sleep: Coroutine function used for delays; tests pass a fake clock.
        """
        self._sleep = sleep
        self._active: set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    def schedule(self, factory: JobFactory, delay_seconds: float = 0, name: str = "job") -> bool:
        """
        Run factory() once after delay_seconds without waiting for it.

        Returns:
            True when the job was scheduled, False when there is no running
            event loop to run it on.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Cannot schedule %s: no running event loop", name)
            return False

        task = loop.create_task(self._run(factory, delay_seconds, name), name=name)
        self._active.add(task)
        task.add_done_callback(self._active.discard)
        logger.debug("Scheduled %s (delay=%.3fs)", name, delay_seconds)
        return True

    async def _run(self, factory: JobFactory, delay_seconds: float, name: str) -> None:
        try:
            if delay_seconds > 0:
                await self._sleep(delay_seconds)
            await factory()
            self.completed += 1
        except asyncio.CancelledError:
            logger.info("Background job cancelled: %s", name)
            raise
        except Exception:
            self.failed += 1
            logger.exception("Background job failed: %s", name)

    def pending_count(self) -> int:
        return len(self._active)

    async def drain(self) -> None:
        """Wait until every job, including jobs scheduled meanwhile, has finished."""
        while self._active:
            await asyncio.gather(*list(self._active), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel whatever is still pending."""
        tasks = list(self._active)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
