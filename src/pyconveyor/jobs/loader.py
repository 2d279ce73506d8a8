"""Auto-registration of job handler classes.

Walks an explicit list of handler classes, resolves an instance of each
from the Container and registers it in the JobRegistry. Failures are
logged and skipped so one broken handler does not stop the boot; the
missing type then surfaces as HandlerNotFoundError when a job of that type
is claimed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from pyconveyor.jobs.container import Container
from pyconveyor.jobs.registry import JobRegistry, handler_type

logger = logging.getLogger(__name__)


@dataclass
class LoadReport:
    registered: list[str] = field(default_factory=list)
    """Job types registered, in load order."""

    skipped: dict[str, str] = field(default_factory=dict)
    """Class name -> reason it was not registered."""


class JobAutoLoader:
    """Registers handler classes from a declared list.

    Usage:
        loader = JobAutoLoader(registry, container)
        report = loader.load_all([WorkflowJob, ChunkingJob])
    """

    def __init__(self, registry: JobRegistry, container: Container):
        self._registry = registry
        self._container = container

    def load_all(self, job_classes: Iterable[type]) -> LoadReport:
        report = LoadReport()
        for job_class in job_classes:
            self._load(job_class, report)

        logger.info(
            f"Job auto-loading completed: {len(report.registered)} registered, "
            f"{len(report.skipped)} skipped"
        )
        if report.registered:
            logger.info(f"Registered job types: {', '.join(report.registered)}")
        return report

    def load_by_category(
        self, categories: Iterable[str], job_classes: Iterable[type]
    ) -> LoadReport:
        """Load only classes whose ``categories`` overlap ``categories``."""
        wanted = set(categories)
        selected = [
            job_class
            for job_class in job_classes
            if wanted.intersection(getattr(job_class, "categories", ()))
        ]
        logger.info(f"Loading jobs for categories: {', '.join(sorted(wanted))}")
        return self.load_all(selected)

    def _load(self, job_class: type, report: LoadReport) -> None:
        name = job_class.__name__
        if not getattr(job_class, "registrable", False):
            logger.debug(f"Job {name} is not registrable, skipping")
            report.skipped[name] = "not registrable"
            return

        try:
            instance = self._container.resolve(job_class)
        except Exception as e:
            logger.error(f"Failed to load job {name}: {e}")
            report.skipped[name] = str(e)
            return

        has_entry_point = callable(getattr(instance, "handle", None)) or callable(
            getattr(instance, "process", None)
        )
        if not has_entry_point:
            logger.warning(f"Job {name} has neither a handle nor a process method, skipping")
            report.skipped[name] = "no handle or process method"
            return

        job_type = self._registry.register(instance, handler_type(instance))
        report.registered.append(job_type)
        logger.info(f"Registered job: {name} (type: {job_type})")
