"""Tests for the session pool.

This module tests:
- Permit bounding of checked-out sessions (including concurrent callers)
- Pool exhaustion timeout
- Session reuse, dead session removal and recovery between retries
- Pool lifecycle and metrics
"""

from __future__ import annotations

import asyncio
import random
import threading
import time

import pytest

from ledgerdriver.common.resilience import ConstantBackoff, RetryPolicy
from ledgerdriver.common.resilience.bulkhead import SemaphoreBulkhead
from ledgerdriver.errors import (
    BadRequestError,
    DriverClosedError,
    InvalidSessionError,
    OccConflictError,
    RetriableExecutionError,
    SessionPoolEmptyError,
)
from ledgerdriver.session.pool import PoolMetrics, SessionPool
from ledgerdriver.session.session import PooledSession, Session
from tests.mocks.ledger_mocks import MockLedgerTransport

STATEMENT = "SELECT * FROM Car"
FAST_RETRY = RetryPolicy(max_retries=4, backoff=ConstantBackoff(0))


def make_pool(
    transport: MockLedgerTransport,
    capacity: int = 2,
    timeout: float = 0.001,
    retry_policy: RetryPolicy = FAST_RETRY,
) -> SessionPool:
    return SessionPool(
        lambda: PooledSession(Session.start("test-ledger", transport)),
        max_concurrent_transactions=capacity,
        pool_timeout=timeout,
        retry_policy=retry_policy,
    )


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def transport() -> MockLedgerTransport:
    transport = MockLedgerTransport()
    transport.set_result(STATEMENT, [{"vin": "1"}])
    return transport


@pytest.fixture
def pool(transport: MockLedgerTransport) -> SessionPool:
    pool = make_pool(transport)
    yield pool
    pool.close()


# =============================================================================
# Bulkhead Tests
# =============================================================================


class TestSemaphoreBulkhead:
    """Tests for the counting permit."""

    def test_acquire_and_release(self):
        """Permits are counted."""
        bulkhead = SemaphoreBulkhead("test", 2)
        assert bulkhead.acquire(0.01)
        assert bulkhead.acquire(0.01)
        assert bulkhead.available_slots() == 0
        assert not bulkhead.acquire(0.01)

        bulkhead.release()
        assert bulkhead.available_slots() == 1

    def test_over_release_rejected(self):
        """Releasing without acquiring is a bug."""
        with pytest.raises(RuntimeError):
            SemaphoreBulkhead("test", 1).release()

    def test_limit_context_manager(self):
        """limit() raises SessionPoolEmptyError when exhausted."""
        bulkhead = SemaphoreBulkhead("test", 1)
        with bulkhead.limit(0.01):
            with pytest.raises(SessionPoolEmptyError):
                with bulkhead.limit(0.01):
                    pass
        assert bulkhead.available_slots() == 1

    def test_metrics(self):
        """Acquisitions and rejections are counted."""
        bulkhead = SemaphoreBulkhead("test", 1)
        bulkhead.acquire(0.01)
        bulkhead.acquire(0.001)
        metrics = bulkhead.get_metrics()
        assert metrics["total_acquired"] == 1
        assert metrics["total_rejected"] == 1

    @pytest.mark.asyncio
    async def test_acquire_async(self):
        """Async acquisition shares the same permits."""
        bulkhead = SemaphoreBulkhead("test", 1)
        assert await bulkhead.acquire_async(0.01)
        assert not await bulkhead.acquire_async(0.01)
        bulkhead.release()
        assert await bulkhead.acquire_async(0.01)

    def test_invalid_capacity(self):
        """Capacity must be positive."""
        with pytest.raises(ValueError):
            SemaphoreBulkhead("test", 0)


# =============================================================================
# SessionPool Tests
# =============================================================================


class TestSessionPool:
    """Tests for SessionPool."""

    def test_invalid_configuration(self, transport):
        """Capacity and timeout are validated."""
        with pytest.raises(ValueError):
            make_pool(transport, capacity=0)
        with pytest.raises(ValueError):
            make_pool(transport, timeout=-1)

    def test_sessions_are_reused(self, pool, transport):
        """Sequential executions share one session."""
        for _ in range(5):
            pool.execute(lambda txn: txn.execute(STATEMENT))

        assert transport.sessions_started == 1
        assert pool.idle_count == 1
        assert pool.checked_out_count == 0
        assert pool.available_permits == 2

    def test_pool_empty_within_timeout(self, transport):
        """Capacity 1: a second caller fails fast while the first holds the session."""
        pool = make_pool(transport, capacity=1, timeout=0.01)
        holding = threading.Event()
        finish = threading.Event()

        def hold(txn):
            holding.set()
            finish.wait(5)

        worker = threading.Thread(target=pool.execute, args=(hold,))
        worker.start()
        try:
            assert holding.wait(5)
            started = time.monotonic()
            with pytest.raises(SessionPoolEmptyError) as exc_info:
                pool.execute(lambda txn: None)
            assert time.monotonic() - started < 1.0
            assert exc_info.value.capacity == 1
        finally:
            finish.set()
            worker.join(5)
            pool.close()

        assert pool.metrics.checkout_failures == 1

    def test_checked_out_never_exceeds_capacity(self):
        """Random concurrent callers never hold more sessions than permits."""
        transport = MockLedgerTransport(latency=0.001)
        capacity = 3
        pool = make_pool(transport, capacity=capacity, timeout=5.0)
        rng = random.Random(1234)
        delays = [rng.uniform(0, 0.005) for _ in range(40)]
        observed: list[int] = []
        errors: list[BaseException] = []

        def work(txn, delay):
            observed.append(pool.checked_out_count)
            time.sleep(delay)
            txn.execute(STATEMENT)

        def caller(delay):
            try:
                pool.execute(lambda txn: work(txn, delay))
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=caller, args=(d,)) for d in delays]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        pool.close()

        assert errors == []
        assert max(observed) <= capacity
        assert transport.peak_active_transactions <= capacity
        assert transport.sessions_started <= capacity
        assert pool.metrics.peak_checked_out <= capacity

    def test_dead_session_not_reused(self, pool, transport):
        """A session that became invalid never comes back from the pool."""
        transport.fail_next("execute_statement", InvalidSessionError("gone"))

        result = pool.execute(lambda txn: txn.execute(STATEMENT))

        assert len(result) == 1
        assert transport.sessions_started == 2
        assert pool.idle_count == 1
        assert pool.metrics.dead_sessions_dropped == 1

        # The surviving session is the replacement
        used = {call.args[0] for call in transport.calls_of("start_transaction")}
        assert used == {"session-1", "session-2"}
        pool.execute(lambda txn: None)
        assert transport.calls_of("start_transaction")[-1].args[0] == "session-2"

    def test_occ_retries_on_next_session(self, pool, transport):
        """OCC conflicts return the session and retry."""
        transport.fail_next("commit_transaction", OccConflictError("conflict"), times=2)
        attempts: list[int] = []

        pool.execute(lambda txn: txn.execute(STATEMENT), on_retry=attempts.append)

        assert attempts == [1, 2]
        assert len(transport.committed) == 1
        assert pool.checked_out_count == 0
        assert pool.available_permits == 2

    def test_retries_exhausted(self, pool, transport):
        """After k retries the underlying failure surfaces."""
        transport.fail_next("commit_transaction", OccConflictError("conflict"), times=10)

        with pytest.raises(OccConflictError):
            pool.execute(
                lambda txn: txn.execute(STATEMENT),
                retry_policy=RetryPolicy(max_retries=2, backoff=ConstantBackoff(0)),
            )

        assert len(transport.calls_of("commit_transaction")) == 3
        assert pool.available_permits == 2

    def test_non_retriable_surfaces_immediately(self, pool, transport):
        """Bad requests are raised unwrapped on the first attempt."""
        transport.fail_next("execute_statement", BadRequestError("syntax error"))

        with pytest.raises(BadRequestError):
            pool.execute(lambda txn: txn.execute(STATEMENT))

        assert len(transport.calls_of("execute_statement")) == 1
        assert pool.idle_count == 1

    def test_session_start_failure_is_retried(self, pool, transport):
        """A failed session start is retried with a new session."""
        transport.fail_next("start_session", ConnectionError("connect timeout"))

        pool.execute(lambda txn: txn.execute(STATEMENT))

        assert len(transport.calls_of("start_session")) == 2
        assert transport.sessions_started == 1
        assert pool.available_permits == 2

    def test_session_start_failure_exhausted(self, transport):
        """Persistent session start failures surface unwrapped."""
        pool = make_pool(transport, retry_policy=RetryPolicy(1, ConstantBackoff(0)))
        transport.fail_next("start_session", ConnectionError("connect timeout"), times=5)

        with pytest.raises(ConnectionError):
            pool.execute(lambda txn: None)

        assert pool.available_permits == 2
        assert pool.checked_out_count == 0

    def test_manual_acquire_release(self, pool):
        """acquire/release hold and return a permit."""
        session = pool.acquire()
        assert pool.checked_out_count == 1
        assert pool.available_permits == 1

        pool.release(session)
        assert pool.checked_out_count == 0
        assert pool.idle_count == 1

    def test_acquire_wraps_start_failure(self, pool, transport):
        """Manual acquisition reports start failures as retriable."""
        transport.fail_next("start_session", ConnectionError("down"))
        with pytest.raises(RetriableExecutionError):
            pool.acquire()
        assert pool.available_permits == 2

    def test_close(self, pool, transport):
        """Closing ends idle sessions and rejects further work."""
        pool.execute(lambda txn: None)
        pool.close()
        pool.close()

        assert pool.is_closed
        assert pool.idle_count == 0
        assert transport.sessions_ended == 1
        with pytest.raises(DriverClosedError):
            pool.execute(lambda txn: None)

    def test_session_returned_after_close_is_ended(self, pool, transport):
        """A session checked in after close is ended instead of pooled."""
        session = pool.acquire()
        pool.close()
        pool.release(session)

        assert pool.idle_count == 0
        assert transport.sessions_ended == 1

    def test_get_pool_status(self, pool):
        """Status includes counts and metrics."""
        pool.execute(lambda txn: None)
        status = pool.get_pool_status()
        assert status["capacity"] == 2
        assert status["idle"] == 1
        assert status["metrics"]["sessions"]["created"] == 1
        assert status["metrics"]["operations"]["checkouts"] == 1


class TestSessionPoolAsync:
    """Tests for SessionPool.execute_async."""

    @pytest.mark.asyncio
    async def test_execute_async(self, pool, transport):
        """Async execution reuses sessions as well."""

        async def work(txn):
            stream = await txn.execute(STATEMENT)
            return [doc async for doc in stream]

        for _ in range(3):
            assert await pool.execute_async(work) == [{"vin": "1"}]
        assert transport.sessions_started == 1

    @pytest.mark.asyncio
    async def test_async_dead_session_replaced(self, pool, transport):
        """Dead sessions are replaced in the async path too."""
        transport.fail_next("execute_statement", InvalidSessionError("gone"))

        async def work(txn):
            await txn.execute(STATEMENT)
            return "done"

        assert await pool.execute_async(work) == "done"
        assert transport.sessions_started == 2
        assert pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_async_concurrency_bounded(self):
        """Concurrent tasks never exceed the pool capacity."""
        transport = MockLedgerTransport(latency=0.002)
        pool = make_pool(transport, capacity=2, timeout=5.0)

        async def work(txn):
            await txn.execute(STATEMENT)
            await asyncio.sleep(0.001)

        await asyncio.gather(*(pool.execute_async(work) for _ in range(4)))
        pool.close()

        assert transport.peak_active_transactions <= 2
        assert pool.metrics.peak_checked_out <= 2

    @pytest.mark.asyncio
    async def test_async_pool_empty(self, transport):
        """Async callers see SessionPoolEmptyError too."""
        pool = make_pool(transport, capacity=1, timeout=0.01)
        session = pool.acquire()

        async def work(txn):
            return None

        with pytest.raises(SessionPoolEmptyError):
            await pool.execute_async(work)
        pool.release(session)
        pool.close()


class TestPoolMetrics:
    """Tests for PoolMetrics."""

    def test_checkout_tracking(self):
        """Peak and averages are tracked."""
        metrics = PoolMetrics()
        metrics.record_checkout(2.0)
        metrics.record_checkout(4.0)
        metrics.record_checkin()

        assert metrics.peak_checked_out == 2
        assert metrics.current_checked_out == 1
        assert metrics.avg_checkout_time_ms == 3.0
        assert metrics.to_dict()["timing"]["max_checkout_ms"] == 4.0

    def test_thread_safety(self):
        """Concurrent updates are not lost."""
        metrics = PoolMetrics()

        def bump():
            for _ in range(1000):
                metrics.record_creation()

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.sessions_created == 4000
