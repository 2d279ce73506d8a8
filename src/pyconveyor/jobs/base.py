"""Job handler base class.

A handler owns one job type. The worker resolves it from the JobRegistry
by ``job.type`` and awaits ``handle(job)``; the handler's ``process`` does
the actual work on the payload. Raising from ``process`` fails the
attempt and hands the retry decision to the queue.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pyconveyor.models import Job

logger = logging.getLogger(__name__)


class BaseJob(ABC):
    """Base class for job handlers.

    Class attributes:
        job_type: Queue type string; the class name is used when unset
        registrable: Whether the auto-loader should register the class
        categories: Labels used by ``JobAutoLoader.load_by_category``

    Example:
        ```python
        class ChunkingJob(BaseJob):
            job_type = "chunking"
            categories = ("document",)

            async def process(self, data):
                ...
        ```
    """

    job_type: ClassVar[str | None] = None
    registrable: ClassVar[bool] = True
    categories: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def type_name(cls) -> str:
        return cls.job_type or cls.__name__

    @abstractmethod
    async def process(self, data: dict[str, Any]) -> Any:
        """Do the work for one job payload."""
        pass

    async def handle(self, job: Job) -> Any:
        """
        Run ``process`` for a claimed job.

        Returns:
            Whatever ``process`` returned

        Raises:
            Exception: Anything ``process`` raises, unchanged
        """
        logger.debug(f"Job {job.id} ({self.type_name()}) attempt {job.attempts_made} started")
        started = time.perf_counter()
        try:
            result = await self.process(job.data)
        except Exception as e:
            logger.warning(
                f"Job {job.id} ({self.type_name()}) attempt {job.attempts_made} failed: {e}"
            )
            raise
        logger.debug(
            f"Job {job.id} ({self.type_name()}) finished in "
            f"{(time.perf_counter() - started) * 1000:.1f}ms"
        )
        return result
