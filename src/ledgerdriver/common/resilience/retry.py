"""Retry orchestration and backoff strategies.

``RetryOrchestrator`` is the generic "retriable execute" loop. It runs a unit
of work, classifies the failure and either stops, or asks the caller to
recover (with a brand new session, or with a different pooled session) and
tries again after a backoff delay. It knows nothing about sessions beyond the
two recovery callbacks it is handed.

The blocking and asyncio loops share the same decision step, so both follow
one state machine:

    attempt ──ok──> return
       │
     failure ──non-retriable / expiry / exhausted──> raise underlying error
       │
     retriable ──session dead──> recover with new session ──┐
       │                                                     │
       └──────session alive──> recover with next session ───┴─> backoff ─> attempt
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, TypeVar

from ledgerdriver.common.cancellation import CancellationToken
from ledgerdriver.common.resilience.config import RetryPolicy, RetryPolicyContext
from ledgerdriver.common.resilience.protocols import Retriable
from ledgerdriver.errors import (
    ExecutionError,
    OperationCancelledError,
    RetriableExecutionError,
    is_transaction_expiry,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")
Recovery = TypeVar("Recovery")


# =============================================================================
# Backoff Strategies
# =============================================================================


class BackoffStrategy(ABC):
    """Abstract base class for backoff strategies."""

    @abstractmethod
    def get_delay(self, context: RetryPolicyContext) -> float:
        """Calculate the delay in seconds before the given retry."""
        ...


@dataclass(frozen=True)
class ExponentialBackoff(BackoffStrategy):
    """Exponential backoff with jitter.

    Delay (ms) = min(sleep_cap_ms, sleep_base_ms ^ retries_attempted) * U(0.5, 1.0)

    The random factor spreads concurrent retries out instead of letting them
    fire in lockstep.

    Example:
        backoff = ExponentialBackoff(sleep_base_ms=10, sleep_cap_ms=5000)
        # Retry 1: 5-10 ms
        # Retry 2: 50-100 ms
        # Retry 3: 500-1000 ms
        # Retry 4: 2500-5000 ms
    """

    DEFAULT_SLEEP_BASE_MS = 10
    DEFAULT_SLEEP_CAP_MS = 5000

    sleep_base_ms: int = DEFAULT_SLEEP_BASE_MS
    sleep_cap_ms: int = DEFAULT_SLEEP_CAP_MS
    jitter_low: float = 0.5
    jitter_high: float = 1.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.sleep_base_ms <= 0:
            raise ValueError("sleep_base_ms must be positive")
        if self.sleep_cap_ms <= 0:
            raise ValueError("sleep_cap_ms must be positive")
        if self.sleep_base_ms > self.sleep_cap_ms:
            raise ValueError("sleep_base_ms cannot be greater than sleep_cap_ms")
        if not 0 <= self.jitter_low <= self.jitter_high <= 1:
            raise ValueError("jitter range must satisfy 0 <= low <= high <= 1")

    def get_delay(self, context: RetryPolicyContext) -> float:
        """Calculate jittered exponential delay."""
        exponential = min(
            float(self.sleep_cap_ms),
            float(self.sleep_base_ms) ** context.retries_attempted,
        )
        jitter = random.uniform(self.jitter_low, self.jitter_high)
        return exponential * jitter / 1000.0


@dataclass(frozen=True)
class ConstantBackoff(BackoffStrategy):
    """Constant backoff strategy.

    Always returns the same delay; ``ConstantBackoff(0)`` disables waiting.
    """

    delay: float = 0.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.delay < 0:
            raise ValueError("delay must be non-negative")

    def get_delay(self, context: RetryPolicyContext) -> float:
        """Return constant delay."""
        return self.delay


# =============================================================================
# Retry Decisions
# =============================================================================


class RetryDecision(Enum):
    """What the orchestrator does with a failed attempt."""

    STOP = auto()  # Re-raise the underlying failure
    NEW_SESSION = auto()  # Session is dead, start a brand new one
    NEXT_SESSION = auto()  # Session is fine, switch to another pooled one


def decide(failure: BaseException, retries_attempted: int, retry_policy: RetryPolicy) -> RetryDecision:
    """Classify a failed attempt.

    Args:
        failure: Exception raised by the attempt.
        retries_attempted: Retries already performed before this failure.
        retry_policy: Policy bounding the number of retries.
    """
    if not isinstance(failure, RetriableExecutionError):
        return RetryDecision.STOP
    if is_transaction_expiry(failure.cause):
        return RetryDecision.STOP
    if retries_attempted >= retry_policy.max_retries:
        return RetryDecision.STOP
    if failure.is_session_alive:
        return RetryDecision.NEXT_SESSION
    return RetryDecision.NEW_SESSION


def unwrap(failure: BaseException) -> BaseException:
    """Strip the execution wrapper from a failure."""
    if isinstance(failure, ExecutionError):
        return failure.cause
    return failure


# =============================================================================
# Retry Orchestrator
# =============================================================================


class RetryOrchestrator(Retriable):
    """Generic retriable-execute loop.

    Recovery runs lazily at the start of the next attempt, after the backoff
    delay, so a recovery that itself fails with an execution error counts as
    a failed attempt and goes through the same decision.

    Example:
        orchestrator = RetryOrchestrator()
        result = orchestrator.execute(
            work,
            RetryPolicy.default(),
            on_new_session=replace_dead_session,
            on_next_session=switch_session,
        )
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Metrics
        self._total_attempts = 0
        self._successful_attempts = 0
        self._retries = 0

    def execute(
        self,
        work: Callable[[], R],
        retry_policy: RetryPolicy,
        on_new_session: Callable[[], None],
        on_next_session: Callable[[], None],
        on_retry: Callable[[int], None] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> R:
        """Run ``work`` with retries, blocking the calling thread."""
        retries = 0
        recover: Callable[[], None] | None = None

        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            self._record_attempt()
            try:
                if recover is not None:
                    recover()
                    recover = None
                result = work()
            except ExecutionError as error:
                failure: ExecutionError = error
            else:
                self._record_success()
                return result

            recover = self._next_recovery(
                failure, retries, retry_policy, on_new_session, on_next_session
            )
            if recover is None:
                raise unwrap(failure)

            retries += 1
            delay = self._before_retry(failure, retries, retry_policy, on_retry)
            if cancellation is not None:
                if cancellation.wait(delay):
                    raise OperationCancelledError()
            else:
                time.sleep(delay)

    async def execute_async(
        self,
        work: Callable[[], Awaitable[R]],
        retry_policy: RetryPolicy,
        on_new_session: Callable[[], Awaitable[None]],
        on_next_session: Callable[[], Awaitable[None]],
        on_retry: Callable[[int], None] | None = None,
    ) -> R:
        """Run ``work`` with retries on the event loop.

        Cancelling the calling task during an attempt or a backoff delay
        propagates ``asyncio.CancelledError`` and ends the loop.
        """
        retries = 0
        recover: Callable[[], Awaitable[None]] | None = None

        while True:
            self._record_attempt()
            try:
                if recover is not None:
                    await recover()
                    recover = None
                result = await work()
            except ExecutionError as error:
                failure: ExecutionError = error
            else:
                self._record_success()
                return result

            recover = self._next_recovery(
                failure, retries, retry_policy, on_new_session, on_next_session
            )
            if recover is None:
                raise unwrap(failure)

            retries += 1
            delay = self._before_retry(failure, retries, retry_policy, on_retry)
            await asyncio.sleep(delay)

    def _next_recovery(
        self,
        failure: ExecutionError,
        retries: int,
        retry_policy: RetryPolicy,
        on_new_session: Recovery,
        on_next_session: Recovery,
    ) -> Recovery | None:
        decision = decide(failure, retries, retry_policy)
        if decision is RetryDecision.STOP:
            if isinstance(failure, RetriableExecutionError) and retries >= retry_policy.max_retries:
                logger.warning(
                    f"Retry limit of {retry_policy.max_retries} reached for transaction "
                    f"{failure.transaction_id}: {failure.cause!r}"
                )
            return None
        if decision is RetryDecision.NEW_SESSION:
            logger.debug("Replacing invalid session...")
            return on_new_session
        logger.debug("Retrying with a different session...")
        return on_next_session

    def _before_retry(
        self,
        failure: ExecutionError,
        retries: int,
        retry_policy: RetryPolicy,
        on_retry: Callable[[int], None] | None,
    ) -> float:
        with self._lock:
            self._retries += 1

        logger.info(f"A recoverable error has occurred. Attempting retry #{retries}.")
        logger.debug(
            f"Errored transaction ID: {failure.transaction_id}. Error cause: {failure.cause!r}"
        )

        if on_retry is not None:
            on_retry(retries)

        return retry_policy.backoff.get_delay(RetryPolicyContext(retries, failure.cause))

    def _record_attempt(self) -> None:
        with self._lock:
            self._total_attempts += 1

    def _record_success(self) -> None:
        with self._lock:
            self._successful_attempts += 1

    def get_metrics(self) -> dict[str, Any]:
        """Get retry metrics."""
        with self._lock:
            return {
                "total_attempts": self._total_attempts,
                "successful_attempts": self._successful_attempts,
                "retries": self._retries,
            }

    def reset(self) -> None:
        """Reset metrics."""
        with self._lock:
            self._total_attempts = 0
            self._successful_attempts = 0
            self._retries = 0


__all__ = [
    "BackoffStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "RetryDecision",
    "decide",
    "unwrap",
    "RetryOrchestrator",
]
