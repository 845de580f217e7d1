"""Configuration classes for retry behavior.

This module provides immutable dataclass-based retry configuration, with
factory methods for common presets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ledgerdriver.common.resilience.retry import BackoffStrategy


def _default_backoff() -> "BackoffStrategy":
    from ledgerdriver.common.resilience.retry import ExponentialBackoff

    return ExponentialBackoff()


@dataclass(frozen=True)
class RetryPolicyContext:
    """What a backoff strategy gets to see before each retry.

    Attributes:
        retries_attempted: Number of the retry about to happen (1-based).
        last_exception: The failure that triggered the retry.
    """

    retries_attempted: int
    last_exception: BaseException | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy applied to a unit of work.

    Attributes:
        max_retries: Maximum number of retries (0 = single attempt).
        backoff: Strategy mapping a ``RetryPolicyContext`` to a delay.
    """

    DEFAULT_MAX_RETRIES = 4

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff: "BackoffStrategy" = field(default_factory=_default_backoff)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @classmethod
    def default(cls) -> "RetryPolicy":
        """Four retries with exponential backoff (10 ms base, 5 s cap)."""
        return cls()

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """No retry - fail on the first error."""
        return cls(max_retries=0)

    @classmethod
    def with_max_retries(cls, max_retries: int) -> "RetryPolicy":
        """Default backoff with a custom retry limit."""
        return cls(max_retries=max_retries)


__all__ = ["RetryPolicy", "RetryPolicyContext"]
