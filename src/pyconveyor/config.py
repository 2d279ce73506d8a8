"""Queue and worker settings.

Defaults can be overridden from the environment:

    QUEUE_REMOVE_ON_COMPLETE    completed jobs kept after trimming (100)
    QUEUE_REMOVE_ON_FAIL        failed jobs kept after trimming (50)
    QUEUE_MAX_ATTEMPTS          default attempts per job (3)
    QUEUE_BACKOFF_DELAY         default exponential backoff in ms (2000)
    QUEUE_CLEANUP_INTERVAL      seconds between cleanup runs (3600)
    QUEUE_COMPLETED_RETENTION   seconds a completed job is kept (86400)
    QUEUE_FAILED_RETENTION      seconds a failed job is kept (604800)
    QUEUE_STALLED_RETENTION     seconds before an active job counts as stalled (3600)
    WORKER_CONCURRENCY          jobs a worker runs at once (4)

Empty variables fall back to the default. Keyword arguments take
precedence over the environment.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pyconveyor.models import Backoff, JobOptions


class QueueSettings(BaseSettings):
    model_config = SettingsConfigDict(
        frozen=True,
        populate_by_name=True,
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Trimming and retries
    # ------------------------------------------------------------------
    remove_on_complete: int = Field(default=100, validation_alias="QUEUE_REMOVE_ON_COMPLETE")
    remove_on_fail: int = Field(default=50, validation_alias="QUEUE_REMOVE_ON_FAIL")
    max_attempts: int = Field(default=3, ge=1, validation_alias="QUEUE_MAX_ATTEMPTS")
    backoff_delay_ms: int = Field(default=2000, ge=0, validation_alias="QUEUE_BACKOFF_DELAY")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    cleanup_interval: float = Field(default=3600.0, validation_alias="QUEUE_CLEANUP_INTERVAL")
    completed_retention: timedelta = Field(
        default=timedelta(hours=24), validation_alias="QUEUE_COMPLETED_RETENTION"
    )
    failed_retention: timedelta = Field(
        default=timedelta(days=7), validation_alias="QUEUE_FAILED_RETENTION"
    )
    stalled_retention: timedelta = Field(
        default=timedelta(hours=1), validation_alias="QUEUE_STALLED_RETENTION"
    )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    worker_concurrency: int = Field(default=4, validation_alias="WORKER_CONCURRENCY")

    @field_validator("completed_retention", "failed_retention", "stalled_retention", mode="before")
    @classmethod
    def _seconds(cls, value: Any) -> Any:
        # Environment values are whole seconds
        if isinstance(value, str):
            return int(value.strip())
        return value

    @classmethod
    def from_env(cls) -> QueueSettings:
        """
        Read settings from ``QUEUE_*`` and ``WORKER_*`` environment variables.

        Raises:
            pydantic.ValidationError: If a variable is set but not a valid
                number; it is a ValueError naming the variable
        """
        return cls()

    def default_job_options(self) -> JobOptions:
        """Options applied to jobs dispatched without explicit options."""
        return JobOptions(
            attempts=self.max_attempts,
            backoff=Backoff.exponential(self.backoff_delay_ms),
        )
