"""
Backoff configuration for job retries.

Design Pattern: Strategy Pattern
Backoff encapsulates how long a failed job waits before its next attempt,
so the worker's retry handling does not change when the strategy does.

Two strategies are supported:
- fixed: the same delay before every retry
- exponential: delay multiplied by the attempt number (delay × attempt)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, cast


class BackoffType(Enum):
    """Backoff strategy name as it appears in job options."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Backoff:
    """
    Delay policy applied between job attempts.

    Examples:
        # Constant two seconds between attempts
        backoff = Backoff.fixed(2000)

        # 1s, 2s, 3s ... (delay × attempt)
        backoff = Backoff.exponential(1000)

        # Queue default
        backoff = Backoff.DEFAULT
    """

    type: BackoffType
    """Which strategy computes the delay."""

    delay_ms: int
    """Base delay in milliseconds."""

    if TYPE_CHECKING:
        NONE: Backoff
        DEFAULT: Backoff
    else:
        NONE = cast("Backoff", None)
        DEFAULT = cast("Backoff", None)

    @classmethod
    def fixed(cls, delay_ms: int) -> Backoff:
        """Create a fixed backoff of ``delay_ms`` milliseconds."""
        return cls(type=BackoffType.FIXED, delay_ms=delay_ms)

    @classmethod
    def exponential(cls, delay_ms: int) -> Backoff:
        """Create an exponential backoff with base ``delay_ms`` milliseconds."""
        return cls(type=BackoffType.EXPONENTIAL, delay_ms=delay_ms)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Backoff:
        """
        Build a Backoff from the wire shape ``{"type": ..., "delay": ...}``.

        ``delay_ms`` is accepted as an alias for ``delay``.

        Raises:
            ValueError: If the type is unknown or the delay is negative
        """
        delay = raw.get("delay", raw.get("delay_ms", 0))
        backoff = cls(type=BackoffType(raw.get("type", "fixed")), delay_ms=int(delay))
        if backoff.delay_ms < 0:
            raise ValueError(f"Backoff delay must be non-negative, got {backoff.delay_ms}")
        return backoff

    def delay_for_attempt(self, attempt: int) -> int:
        """
        Calculate the delay before the next attempt.

        Args:
            attempt: Number of attempts made so far (1-indexed)

        Returns:
            Delay in milliseconds

        Example:
            backoff = Backoff.exponential(1000)
            backoff.delay_for_attempt(1)  # 1000
            backoff.delay_for_attempt(2)  # 2000
            backoff.delay_for_attempt(3)  # 3000
        """
        if self.type == BackoffType.FIXED:
            return self.delay_ms
        return self.delay_ms * max(attempt, 1)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "delay": self.delay_ms}


Backoff.NONE = Backoff(type=BackoffType.FIXED, delay_ms=0)

Backoff.DEFAULT = Backoff(type=BackoffType.EXPONENTIAL, delay_ms=2000)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that decide whether the queue should retry a job.

    Errors that do not derive from this class are treated as retryable.

    Example:
        class UpstreamUnavailable(RetryableError):
            pass

        class BadPayload(RetryableError):
            def is_retryable(self) -> bool:
                return False
    """

    def is_retryable(self) -> bool:
        """
        Returns True if the failure is transient and the job should be retried.

        Returns:
            True if retryable, False if the job should fail immediately
        """
        return True


class NonRetryableError(RetryableError):
    """Failure that must not be retried (bad configuration, bad input)."""

    def is_retryable(self) -> bool:
        return False


def is_retryable(error: BaseException) -> bool:
    """Return whether ``error`` allows another attempt."""
    if isinstance(error, RetryableError):
        return error.is_retryable()
    return True
