"""
Retention sweeper for bounding stored job records.

The sweeper runs periodically, independent of job traffic, and removes
completed and failed jobs that are older than their retention window.
"""

import asyncio
import logging
from collections.abc import Sequence

from dispatcher.config import Settings, get_settings
from dispatcher.constants import JobState
from dispatcher.queue import Queue

logger = logging.getLogger(__name__)


def _pick(value, default):
    return default if value is None else value


class RetentionSweeper:
    """
    Periodic cleanup of terminal jobs.

    Each cycle, for every queue:
    1. Remove completed jobs older than the completed window (small batch)
    2. Remove failed jobs older than the failed window (small batch)

    A failed cycle is logged and the next cycle runs as usual.
    """

    def __init__(
        self,
        queues: Sequence[Queue],
        interval_seconds: float | None = None,
        completed_age_seconds: float | None = None,
        completed_limit: int | None = None,
        failed_age_seconds: float | None = None,
        failed_limit: int | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the sweeper.

        Args:
            queues: Queues to clean.
            interval_seconds: Seconds between cycles.
            completed_age_seconds: Age after which completed jobs go.
            completed_limit: Completed jobs removed per queue per cycle.
            failed_age_seconds: Age after which failed jobs go.
            failed_limit: Failed jobs removed per queue per cycle.
            settings: Settings supplying any value not passed explicitly.
        """
        settings = settings or get_settings()
        self.queues = list(queues)
        self.interval = _pick(interval_seconds, settings.sweeper_interval_seconds)
        self.completed_age = _pick(completed_age_seconds, settings.sweeper_completed_age_seconds)
        self.completed_limit = _pick(completed_limit, settings.sweeper_completed_limit)
        self.failed_age = _pick(failed_age_seconds, settings.sweeper_failed_age_seconds)
        self.failed_limit = _pick(failed_limit, settings.sweeper_failed_limit)
        self._running = False
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the sweeper loop in the background."""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._wakeup.clear()
        self._task = asyncio.create_task(self._run(), name="retention-sweeper")

    async def _run(self) -> None:
        logger.info(f"Retention sweeper starting with interval {self.interval}s")

        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), self.interval)
            except TimeoutError:
                pass
            if not self._running:
                break

            try:
                await self.run_once()
                logger.info("Queue cleanup completed")
            except Exception as e:
                logger.error(f"Queue cleanup error: {e}")

        logger.info("Retention sweeper stopped")

    async def stop(self) -> None:
        """Stop the sweeper and wait for the loop to exit."""
        logger.info("Retention sweeper stopping")
        self._running = False
        self._wakeup.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def run_once(self) -> int:
        """
        Run one cleanup cycle (for testing or cron-style execution).

        Returns:
            Number of jobs removed across all queues.
        """
        removed = 0
        for queue in self.queues:
            removed += await queue.clean(self.completed_age, self.completed_limit, JobState.COMPLETED)
            removed += await queue.clean(self.failed_age, self.failed_limit, JobState.FAILED)
        return removed
