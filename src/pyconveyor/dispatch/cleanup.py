"""Periodic queue cleanup.

Removes completed jobs after 24 hours, failed jobs after 7 days and jobs
stuck ACTIVE for more than an hour (stalled), by default once an hour.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from pyconveyor.config import QueueSettings
from pyconveyor.models import JobState, utcnow
from pyconveyor.storage.base import JobStore

logger = logging.getLogger(__name__)

# Key used in cleanup results for each purged state
_RESULT_KEYS = {
    JobState.COMPLETED: "completed",
    JobState.FAILED: "failed",
    JobState.ACTIVE: "stalled",
}


class QueueCleaner:
    """Age-based purging of finished and stalled jobs.

    Usage:
        cleaner = QueueCleaner(store, settings)
        cleaner.start()          # hourly in the background
        ...
        await cleaner.stop()
    """

    def __init__(self, store: JobStore, settings: QueueSettings | None = None):
        self._store = store
        self._settings = settings or QueueSettings()
        self._task: asyncio.Task | None = None

    async def cleanup_old_jobs(self) -> dict[str, int]:
        """
        Purge jobs older than their state's retention.

        Errors are logged; the next scheduled run tries again.

        Returns:
            Removed counts keyed ``completed``, ``failed``, ``stalled``
        """
        logger.info("Starting scheduled queue cleanup...")
        now = utcnow()
        retention = {
            JobState.COMPLETED: self._settings.completed_retention,
            JobState.FAILED: self._settings.failed_retention,
            JobState.ACTIVE: self._settings.stalled_retention,
        }

        result = {key: 0 for key in _RESULT_KEYS.values()}
        try:
            for state, keep_for in retention.items():
                removed = await self._store.clean(state, older_than=now - keep_for)
                result[_RESULT_KEYS[state]] = len(removed)
                logger.info(
                    f"Cleaned up {len(removed)} {_RESULT_KEYS[state]} jobs older than {keep_for}"
                )
            logger.info("Queue cleanup completed successfully")
        except Exception as e:
            logger.error(f"Error during queue cleanup: {e}")
        return result

    async def manual_cleanup(self, states: Iterable[JobState] | None = None) -> dict[str, int]:
        """
        Immediately purge every job in ``states``.

        Args:
            states: Any of COMPLETED, FAILED, ACTIVE; all three by default

        Returns:
            Removed counts keyed ``completed``, ``failed``, ``stalled``

        Raises:
            ValueError: If a state other than COMPLETED, FAILED or ACTIVE is given
        """
        wanted = list(states) if states is not None else list(_RESULT_KEYS)
        for state in wanted:
            if state not in _RESULT_KEYS:
                raise ValueError(f"Manual cleanup does not purge {state.value} jobs")

        logger.info("Starting manual queue cleanup...")
        result = {key: 0 for key in _RESULT_KEYS.values()}
        for state in wanted:
            removed = await self._store.clean(state)
            result[_RESULT_KEYS[state]] = len(removed)

        logger.info(
            f"Manual cleanup completed: {result['completed']} completed, "
            f"{result['failed']} failed, {result['stalled']} active jobs removed"
        )
        return result

    def start(self, interval: float | None = None) -> None:
        """Run ``cleanup_old_jobs`` every ``interval`` seconds in the background."""
        if self._task is not None and not self._task.done():
            return
        period = interval if interval is not None else self._settings.cleanup_interval
        self._task = asyncio.create_task(self._loop(period))

    async def _loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.cleanup_old_jobs()

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
