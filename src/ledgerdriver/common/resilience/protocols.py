"""Protocol definitions for the driver's capability sets.

Sessions, the retry orchestrator and the pool are plain classes that satisfy
these small structural interfaces instead of sharing a base-class hierarchy.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from ledgerdriver.common.cancellation import CancellationToken
    from ledgerdriver.common.resilience.config import RetryPolicy

R = TypeVar("R")


@runtime_checkable
class Executable(Protocol):
    """Something that runs a unit of work inside one ledger transaction."""

    @abstractmethod
    def execute(
        self,
        func: Callable[[Any], R],
        cancellation: "CancellationToken | None" = None,
    ) -> Any:
        """Run ``func`` in a new transaction and commit it."""
        ...

    @abstractmethod
    async def execute_async(self, func: Callable[[Any], Awaitable[R]]) -> Any:
        """Coroutine variant of ``execute``."""
        ...


@runtime_checkable
class Retriable(Protocol):
    """Something that drives a retriable operation with recovery callbacks."""

    @abstractmethod
    def execute(
        self,
        work: Callable[[], R],
        retry_policy: "RetryPolicy",
        on_new_session: Callable[[], None],
        on_next_session: Callable[[], None],
        on_retry: Callable[[int], None] | None = None,
        cancellation: "CancellationToken | None" = None,
    ) -> R:
        """Run ``work`` until it succeeds, fails terminally or retries run out."""
        ...

    @abstractmethod
    async def execute_async(
        self,
        work: Callable[[], Awaitable[R]],
        retry_policy: "RetryPolicy",
        on_new_session: Callable[[], Awaitable[None]],
        on_next_session: Callable[[], Awaitable[None]],
        on_retry: Callable[[int], None] | None = None,
    ) -> R:
        """Coroutine variant of ``execute``."""
        ...


@runtime_checkable
class PoolResource(Protocol):
    """A resource the session pool can hand out and take back."""

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Identifier of the underlying ledger session."""
        ...

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the resource may be returned to the idle set."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the remote resource; must not raise."""
        ...


__all__ = ["Executable", "Retriable", "PoolResource"]
