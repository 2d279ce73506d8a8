"""Minimal dependency container used to build job handlers.

Factories receive the container so they can resolve their own
dependencies. Resolved instances are cached: every class resolves to one
shared instance.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


class ResolutionError(Exception):
    """A class could not be instantiated by the container."""

    def __init__(self, cls: type, reason: str):
        super().__init__(f"Cannot resolve {cls.__name__}: {reason}")
        self.cls = cls


class Container:
    """Class-keyed factory and instance table.

    Example:
        ```python
        container = Container()
        container.register_instance(WorkflowExecutor, executor)
        container.register(WorkflowJob, lambda c: WorkflowJob(c.resolve(WorkflowExecutor)))
        job = container.resolve(WorkflowJob)
        ```
    """

    def __init__(self):
        self._factories: dict[type, Callable[[Container], Any]] = {}
        self._instances: dict[type, Any] = {}

    def register(self, cls: type[T], factory: Callable[[Container], T]) -> None:
        self._factories[cls] = factory
        self._instances.pop(cls, None)

    def register_instance(self, cls: type[T], instance: T) -> None:
        self._instances[cls] = instance

    def has(self, cls: type) -> bool:
        return cls in self._instances or cls in self._factories

    def resolve(self, cls: type[T]) -> T:
        """
        Return the shared instance of ``cls``.

        Classes without a registered factory are built with no arguments.

        Raises:
            ResolutionError: If the factory or constructor fails
        """
        if cls in self._instances:
            return self._instances[cls]

        factory = self._factories.get(cls)
        try:
            instance = factory(self) if factory is not None else cls()
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError(cls, str(e)) from e

        self._instances[cls] = instance
        return instance
