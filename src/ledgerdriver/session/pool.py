"""Bounded session pool.

The pool keeps an idle set of live sessions and a counting permit of the same
capacity. Every checked-out session holds one permit, so the number of
sessions in use never exceeds ``max_concurrent_transactions``.

Each ``execute`` call runs the unit of work through the ``RetryOrchestrator``
and recovers between attempts:

- session dead: drop it, keep the permit, start a brand new session
- session alive: return it and its permit, check out another one

A permit that cannot be obtained within ``pool_timeout`` raises
``SessionPoolEmptyError``; the pool never retries that.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from ledgerdriver.common.cancellation import CancellationToken
from ledgerdriver.common.resilience.bulkhead import SemaphoreBulkhead
from ledgerdriver.common.resilience.config import RetryPolicy
from ledgerdriver.common.resilience.retry import RetryOrchestrator
from ledgerdriver.errors import (
    DriverClosedError,
    RetriableExecutionError,
    SessionPoolEmptyError,
)
from ledgerdriver.session.session import PooledSession
from ledgerdriver.transaction.transaction import AsyncTransactionExecutor, TransactionExecutor

logger = logging.getLogger(__name__)

R = TypeVar("R")


# =============================================================================
# Metrics
# =============================================================================


@dataclass
class PoolMetrics:
    """Session pool metrics.

    Thread-safe metrics collection with atomic operations.
    """

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # Session counts
    sessions_created: int = 0
    sessions_ended: int = 0
    dead_sessions_dropped: int = 0
    current_checked_out: int = 0
    peak_checked_out: int = 0

    # Operation counts
    checkouts: int = 0
    checkins: int = 0
    checkout_failures: int = 0

    # Timing metrics
    total_checkout_time_ms: float = 0.0
    max_checkout_time_ms: float = 0.0

    @property
    def avg_checkout_time_ms(self) -> float:
        """Average checkout time in milliseconds."""
        if self.checkouts == 0:
            return 0.0
        return self.total_checkout_time_ms / self.checkouts

    def record_checkout(self, duration_ms: float) -> None:
        """Record a successful checkout."""
        with self._lock:
            self.checkouts += 1
            self.current_checked_out += 1
            self.total_checkout_time_ms += duration_ms
            self.max_checkout_time_ms = max(self.max_checkout_time_ms, duration_ms)
            if self.current_checked_out > self.peak_checked_out:
                self.peak_checked_out = self.current_checked_out

    def record_checkin(self) -> None:
        """Record a session coming back from a caller."""
        with self._lock:
            self.checkins += 1
            self.current_checked_out = max(0, self.current_checked_out - 1)

    def record_checkout_failure(self) -> None:
        with self._lock:
            self.checkout_failures += 1

    def record_creation(self) -> None:
        with self._lock:
            self.sessions_created += 1

    def record_end(self) -> None:
        with self._lock:
            self.sessions_ended += 1

    def record_dead_session(self) -> None:
        with self._lock:
            self.dead_sessions_dropped += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary for serialization."""
        with self._lock:
            return {
                "sessions": {
                    "created": self.sessions_created,
                    "ended": self.sessions_ended,
                    "dead_dropped": self.dead_sessions_dropped,
                    "checked_out": self.current_checked_out,
                    "peak_checked_out": self.peak_checked_out,
                },
                "operations": {
                    "checkouts": self.checkouts,
                    "checkins": self.checkins,
                    "checkout_failures": self.checkout_failures,
                },
                "timing": {
                    "avg_checkout_ms": round(self.avg_checkout_time_ms, 2),
                    "max_checkout_ms": round(self.max_checkout_time_ms, 2),
                },
            }


@dataclass
class _Checkout:
    """What one execution currently holds from the pool."""

    session: PooledSession | None = None
    holds_permit: bool = False


# =============================================================================
# Session Pool
# =============================================================================


class SessionPool:
    """Bounded pool of ledger sessions.

    Example:
        pool = SessionPool(
            lambda: PooledSession(Session.start("vehicles", transport)),
            max_concurrent_transactions=10,
        )
        count = pool.execute(lambda txn: len(txn.execute("SELECT * FROM Car").buffer()))
        pool.close()
    """

    DEFAULT_MAX_CONCURRENT_TRANSACTIONS = 50
    DEFAULT_POOL_TIMEOUT = 0.001

    def __init__(
        self,
        session_factory: Callable[[], PooledSession],
        max_concurrent_transactions: int = DEFAULT_MAX_CONCURRENT_TRANSACTIONS,
        pool_timeout: float = DEFAULT_POOL_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        orchestrator: RetryOrchestrator | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            session_factory: Starts a new session on the ledger.
            max_concurrent_transactions: Capacity of the pool and its permit.
            pool_timeout: Seconds to wait for a permit before giving up.
            retry_policy: Policy used when ``execute`` is not given one.
            orchestrator: Retry loop; a private one is created by default.
        """
        if max_concurrent_transactions <= 0:
            raise ValueError("max_concurrent_transactions must be positive")
        if pool_timeout < 0:
            raise ValueError("pool_timeout must not be negative")

        self._session_factory = session_factory
        self._capacity = max_concurrent_transactions
        self._pool_timeout = pool_timeout
        self._retry_policy = retry_policy or RetryPolicy.default()
        self._orchestrator = orchestrator or RetryOrchestrator()

        self._idle: deque[PooledSession] = deque()
        self._permits = SemaphoreBulkhead("session-pool", max_concurrent_transactions)
        self._lock = threading.RLock()
        self._closed = False
        self._checked_out = 0
        self._metrics = PoolMetrics()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pool_timeout(self) -> float:
        return self._pool_timeout

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def metrics(self) -> PoolMetrics:
        return self._metrics

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def idle_count(self) -> int:
        """Sessions waiting in the idle set."""
        with self._lock:
            return len(self._idle)

    @property
    def checked_out_count(self) -> int:
        """Sessions currently held by callers."""
        with self._lock:
            return self._checked_out

    @property
    def available_permits(self) -> int:
        return self._permits.available_slots()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(
        self,
        func: Callable[[TransactionExecutor], R],
        retry_policy: RetryPolicy | None = None,
        on_retry: Callable[[int], None] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> Any:
        """Run ``func`` in a transaction on a pooled session, with retries.

        Raises:
            DriverClosedError: If the pool is closed.
            SessionPoolEmptyError: If no permit became available in time.
        """
        self._ensure_open()
        checkout = _Checkout()

        def work() -> Any:
            session = checkout.session
            if session is None:
                session = self._fill(checkout)
            return session.execute(func, cancellation)

        def on_new_session() -> None:
            self._discard(checkout)

        def on_next_session() -> None:
            self._release(checkout)

        try:
            return self._orchestrator.execute(
                work,
                retry_policy or self._retry_policy,
                on_new_session,
                on_next_session,
                on_retry,
                cancellation,
            )
        finally:
            self._release(checkout)

    async def execute_async(
        self,
        func: Callable[[AsyncTransactionExecutor], Awaitable[R]],
        retry_policy: RetryPolicy | None = None,
        on_retry: Callable[[int], None] | None = None,
    ) -> Any:
        """Coroutine variant of ``execute``."""
        self._ensure_open()
        checkout = _Checkout()

        async def work() -> Any:
            session = checkout.session
            if session is None:
                session = await self._fill_async(checkout)
            return await session.execute_async(func)

        async def on_new_session() -> None:
            self._discard(checkout)

        async def on_next_session() -> None:
            self._release(checkout)

        try:
            return await self._orchestrator.execute_async(
                work,
                retry_policy or self._retry_policy,
                on_new_session,
                on_next_session,
                on_retry,
            )
        finally:
            self._release(checkout)

    # -------------------------------------------------------------------------
    # Acquire / Release
    # -------------------------------------------------------------------------

    def acquire(self) -> PooledSession:
        """Check out a session for manual use; pair with ``release``.

        Raises:
            SessionPoolEmptyError: If no permit became available in time.
            RetriableExecutionError: If a new session could not be started.
        """
        self._ensure_open()
        return self._fill(_Checkout())

    def release(self, session: PooledSession) -> None:
        """Return a session obtained from ``acquire``."""
        self._release(_Checkout(session, holds_permit=True))

    def _fill(self, checkout: _Checkout) -> PooledSession:
        if not checkout.holds_permit:
            self._take_permit(self._permits.acquire(self._pool_timeout))
            checkout.holds_permit = True

        started = time.perf_counter()
        try:
            session = self._take_idle()
            if session is None:
                session = self._start_new_session()
        except BaseException:
            self._release_permit(checkout)
            raise
        self._check_out(checkout, session, started)
        return session

    async def _fill_async(self, checkout: _Checkout) -> PooledSession:
        if not checkout.holds_permit:
            self._take_permit(await self._permits.acquire_async(self._pool_timeout))
            checkout.holds_permit = True

        started = time.perf_counter()
        try:
            session = self._take_idle()
            if session is None:
                session = await self._start_new_session_async()
        except BaseException:
            self._release_permit(checkout)
            raise
        self._check_out(checkout, session, started)
        return session

    def _take_permit(self, acquired: bool) -> None:
        if not acquired:
            self._metrics.record_checkout_failure()
            logger.error(
                f"Session pool is empty: no permit within {self._pool_timeout}s "
                f"(capacity={self._capacity})"
            )
            raise SessionPoolEmptyError(self._capacity, self._pool_timeout)

    def _take_idle(self) -> PooledSession | None:
        with self._lock:
            self._ensure_open()
            logger.debug(
                f"Getting session. There are {len(self._idle)} free sessions and "
                f"{self._permits.available_slots()} available permits."
            )
            if self._idle:
                return self._idle.popleft()
            return None

    def _start_new_session(self) -> PooledSession:
        logger.debug("Creating new pooled session.")
        try:
            session = self._session_factory()
        except Exception as error:
            logger.debug(f"Failed to start session: {error!r}")
            raise RetriableExecutionError(None, False, error) from error
        self._metrics.record_creation()
        return session

    async def _start_new_session_async(self) -> PooledSession:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._start_new_session)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(self._end_orphan)
            raise

    def _end_orphan(self, future: "asyncio.Future[PooledSession]") -> None:
        """End a session whose creation outlived the task that asked for it."""
        if future.cancelled() or future.exception() is not None:
            return
        session = future.result()
        loop = asyncio.get_running_loop()
        loop.run_in_executor(None, self._end_session, session)

    def _check_out(self, checkout: _Checkout, session: PooledSession, started: float) -> None:
        with self._lock:
            self._checked_out += 1
        self._metrics.record_checkout((time.perf_counter() - started) * 1000)
        checkout.session = session

    def _release(self, checkout: _Checkout) -> None:
        """Give back the session (if any) and the permit (if held)."""
        session, checkout.session = checkout.session, None
        if session is not None:
            self._check_in(session)
        self._release_permit(checkout)

    def _discard(self, checkout: _Checkout) -> None:
        """Drop a dead session but keep the permit for its replacement."""
        session, checkout.session = checkout.session, None
        if session is None:
            return
        session.mark_dead()
        self._check_in(session)

    def _release_permit(self, checkout: _Checkout) -> None:
        if checkout.holds_permit:
            checkout.holds_permit = False
            self._permits.release()

    def _check_in(self, session: PooledSession) -> None:
        end = False
        with self._lock:
            self._checked_out -= 1
            if self._closed:
                end = True
            elif session.is_alive:
                self._idle.append(session)
            else:
                logger.debug(f"Dropping dead session {session.session_id}")
                self._metrics.record_dead_session()
        self._metrics.record_checkin()
        if end:
            self._end_session(session)

    def _end_session(self, session: PooledSession) -> None:
        session.close()
        self._metrics.record_end()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            logger.error("Session pool is closed")
            raise DriverClosedError()

    def close(self) -> None:
        """Close the pool and end every idle session. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            while self._idle:
                self._end_session(self._idle.popleft())
            logger.info("SessionPool closed")

    def get_pool_status(self) -> dict[str, Any]:
        """Snapshot of the pool state and metrics."""
        return {
            "closed": self._closed,
            "capacity": self._capacity,
            "idle": self.idle_count,
            "checked_out": self.checked_out_count,
            "available_permits": self.available_permits,
            "metrics": self._metrics.to_dict(),
        }

    def __enter__(self) -> "SessionPool":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"SessionPool(capacity={self._capacity}, idle={self.idle_count}, "
            f"checked_out={self.checked_out_count}, closed={self._closed})"
        )


__all__ = ["PoolMetrics", "SessionPool"]
