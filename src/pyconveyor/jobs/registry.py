"""Job type registry.

Maps job type strings to handler instances. Built during bootstrap and
read-mostly afterwards.
"""

from __future__ import annotations

import logging
from typing import Any

from pyconveyor.models import NonRetryableError

logger = logging.getLogger(__name__)


class HandlerNotFoundError(NonRetryableError):
    """No handler is registered for a job type."""

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type


def handler_type(handler: Any) -> str:
    """Job type a handler declares: ``job_type`` attribute, else its class name."""
    declared = getattr(handler, "job_type", None)
    if declared:
        return declared
    return type(handler).__name__


class JobRegistry:
    """Registry mapping job type names to handlers.

    A handler is any object with an async ``handle(job)`` or
    ``process(data)`` method; BaseJob subclasses provide both.

    Example:
        ```python
        registry = JobRegistry()
        registry.register(ChunkingJob())
        handler = registry.get_job("chunking")
        ```
    """

    def __init__(self):
        self._handlers: dict[str, Any] = {}

    def register(self, handler: Any, job_type: str | None = None) -> str:
        """Register ``handler`` under ``job_type`` or its declared type.

        Returns:
            The job type the handler was registered under
        """
        key = job_type or handler_type(handler)
        if key in self._handlers and self._handlers[key] is not handler:
            logger.warning(f"Job type {key!r} already registered, replacing handler")
        self._handlers[key] = handler
        logger.debug(f"Registered job type: {key}")
        return key

    def get_job(self, job_type: str) -> Any:
        """
        Return the handler for ``job_type``.

        Raises:
            HandlerNotFoundError: If nothing is registered for it
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerNotFoundError(job_type)
        return handler

    def get_all_jobs(self) -> dict[str, Any]:
        return dict(self._handlers)

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def is_empty(self) -> bool:
        return len(self._handlers) == 0
