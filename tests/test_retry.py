"""Tests for retry orchestration.

This module tests:
- Backoff strategies
- Retry policy validation and presets
- Failure classification
- The blocking and asyncio retry loops
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any
from unittest.mock import patch

import pytest

from ledgerdriver.common.cancellation import CancellationToken
from ledgerdriver.common.resilience import (
    ConstantBackoff,
    ExponentialBackoff,
    Retriable,
    RetryDecision,
    RetryOrchestrator,
    RetryPolicy,
    RetryPolicyContext,
    decide,
)
from ledgerdriver.errors import (
    BadRequestError,
    ErrorCode,
    ExecutionError,
    InvalidSessionError,
    OccConflictError,
    OperationCancelledError,
    RetriableExecutionError,
    TransportError,
    is_transaction_expiry,
)

NO_WAIT = ConstantBackoff(0)


def _retriable(cause: BaseException, alive: bool = True) -> RetriableExecutionError:
    return RetriableExecutionError("txn-1", alive, cause)


class Recorder:
    """Records which recovery callbacks ran, in order."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    def new_session(self) -> None:
        self.events.append("new")

    def next_session(self) -> None:
        self.events.append("next")

    def on_retry(self, attempt: int) -> None:
        self.events.append(attempt)

    async def new_session_async(self) -> None:
        self.new_session()

    async def next_session_async(self) -> None:
        self.next_session()


class FailingWork:
    """Unit of work failing with the queued errors, then succeeding."""

    def __init__(self, *failures: BaseException, result: Any = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.attempts = 0

    def __call__(self) -> Any:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result

    async def run_async(self) -> Any:
        return self()


# =============================================================================
# Backoff Tests
# =============================================================================


class TestExponentialBackoff:
    """Tests for ExponentialBackoff."""

    def test_delay_within_jitter_bounds(self):
        """Delay lies in [0.5, 1.0] times base ^ retries."""
        backoff = ExponentialBackoff(sleep_base_ms=10, sleep_cap_ms=5000)
        for retries, full_ms in [(1, 10), (2, 100), (3, 1000)]:
            for _ in range(20):
                delay = backoff.get_delay(RetryPolicyContext(retries))
                assert full_ms * 0.5 / 1000 <= delay <= full_ms / 1000

    def test_delay_capped(self):
        """Delay never exceeds the cap."""
        backoff = ExponentialBackoff(sleep_base_ms=10, sleep_cap_ms=5000)
        for _ in range(20):
            assert backoff.get_delay(RetryPolicyContext(10)) <= 5.0

    def test_uses_uniform_jitter(self):
        """The jitter factor comes from random.uniform(0.5, 1.0)."""
        backoff = ExponentialBackoff(sleep_base_ms=10, sleep_cap_ms=5000)
        with patch("ledgerdriver.common.resilience.retry.random.uniform", return_value=0.75) as uniform:
            assert backoff.get_delay(RetryPolicyContext(2)) == pytest.approx(0.075)
        uniform.assert_called_once_with(0.5, 1.0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"sleep_base_ms": 0},
            {"sleep_cap_ms": -1},
            {"sleep_base_ms": 100, "sleep_cap_ms": 10},
            {"jitter_low": 0.9, "jitter_high": 0.5},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        """Invalid parameters are rejected."""
        with pytest.raises(ValueError):
            ExponentialBackoff(**kwargs)


class TestConstantBackoff:
    """Tests for ConstantBackoff."""

    def test_constant_delay(self):
        """Always the same delay."""
        backoff = ConstantBackoff(0.25)
        assert backoff.get_delay(RetryPolicyContext(1)) == 0.25
        assert backoff.get_delay(RetryPolicyContext(9)) == 0.25

    def test_negative_rejected(self):
        """Negative delays are rejected."""
        with pytest.raises(ValueError):
            ConstantBackoff(-1)


# =============================================================================
# Retry Policy Tests
# =============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_defaults(self):
        """Four retries with exponential backoff."""
        policy = RetryPolicy.default()
        assert policy.max_retries == 4
        assert isinstance(policy.backoff, ExponentialBackoff)
        assert policy.backoff.sleep_base_ms == 10
        assert policy.backoff.sleep_cap_ms == 5000

    def test_presets(self):
        """Preset constructors."""
        assert RetryPolicy.no_retry().max_retries == 0
        assert RetryPolicy.with_max_retries(7).max_retries == 7

    def test_negative_retries_rejected(self):
        """Negative retry counts are rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)


# =============================================================================
# Classification Tests
# =============================================================================


class TestDecide:
    """Tests for failure classification."""

    def test_unwrapped_failure_stops(self):
        """Failures not wrapped as retriable are never retried."""
        policy = RetryPolicy(max_retries=3)
        assert decide(ValueError("boom"), 0, policy) is RetryDecision.STOP
        assert decide(ExecutionError("t", True, BadRequestError("bad")), 0, policy) is RetryDecision.STOP

    def test_alive_session_switches_session(self):
        """Retriable failure on a live session asks for the next session."""
        failure = _retriable(OccConflictError("occ"), alive=True)
        assert decide(failure, 0, RetryPolicy()) is RetryDecision.NEXT_SESSION

    def test_dead_session_starts_new_session(self):
        """Retriable failure on a dead session asks for a new session."""
        failure = _retriable(InvalidSessionError("gone"), alive=False)
        assert decide(failure, 0, RetryPolicy()) is RetryDecision.NEW_SESSION

    def test_exhausted_stops(self):
        """Once retries are used up the loop stops."""
        failure = _retriable(OccConflictError("occ"))
        assert decide(failure, 2, RetryPolicy(max_retries=2)) is RetryDecision.STOP

    def test_transaction_expiry_stops(self):
        """Transaction expiry is terminal even when wrapped as retriable."""
        expired = InvalidSessionError("expired", code=ErrorCode.TRANSACTION_EXPIRED)
        assert decide(_retriable(expired, alive=False), 0, RetryPolicy()) is RetryDecision.STOP


class TestTransactionExpiry:
    """Tests for transaction expiry detection."""

    def test_structured_code(self):
        """The structured code is authoritative."""
        assert is_transaction_expiry(
            InvalidSessionError("whatever", code=ErrorCode.TRANSACTION_EXPIRED)
        )

    def test_message_fallback(self):
        """Message matching is used when no specific code is given."""
        assert is_transaction_expiry(InvalidSessionError("Transaction ABC has expired"))
        assert is_transaction_expiry(InvalidSessionError("Transaction ABC has expired", code=None))
        assert not is_transaction_expiry(InvalidSessionError("Session has expired"))

    def test_other_errors(self):
        """Only invalid-session failures can be expiries."""
        assert not is_transaction_expiry(TransportError("Transaction ABC has expired"))

    def test_server_unavailable(self):
        """500 and 503 count as server-side transient failures."""
        assert TransportError("x", status_code=500).is_server_unavailable
        assert TransportError("x", status_code=503).is_server_unavailable
        assert not TransportError("x", status_code=400).is_server_unavailable
        assert not TransportError("x").is_server_unavailable


# =============================================================================
# RetryOrchestrator Tests
# =============================================================================


class TestRetryOrchestrator:
    """Tests for the blocking retry loop."""

    def test_satisfies_protocol(self):
        """RetryOrchestrator is a Retriable."""
        assert isinstance(RetryOrchestrator(), Retriable)

    def test_success_first_try(self):
        """No recovery or retry callbacks on success."""
        recorder = Recorder()
        work = FailingWork()
        result = RetryOrchestrator().execute(
            work, RetryPolicy(backoff=NO_WAIT), recorder.new_session, recorder.next_session,
            recorder.on_retry,
        )
        assert result == "ok"
        assert work.attempts == 1
        assert recorder.events == []

    @pytest.mark.parametrize("max_retries", [0, 1, 3, 5])
    def test_k_retries_give_k_plus_one_attempts(self, max_retries):
        """An always-failing retriable unit of work runs k+1 times."""
        occ = OccConflictError("conflict")
        work = FailingWork(*[_retriable(occ) for _ in range(max_retries + 1)])
        recorder = Recorder()

        with pytest.raises(OccConflictError) as exc_info:
            RetryOrchestrator().execute(
                work, RetryPolicy(max_retries, NO_WAIT), recorder.new_session,
                recorder.next_session, recorder.on_retry,
            )

        assert exc_info.value is occ
        assert work.attempts == max_retries + 1
        assert [e for e in recorder.events if isinstance(e, int)] == list(
            range(1, max_retries + 1)
        )

    def test_non_retriable_raised_unwrapped(self):
        """The underlying failure is raised, not the wrapper."""
        bad = BadRequestError("syntax error")
        work = FailingWork(ExecutionError("txn-1", True, bad))

        with pytest.raises(BadRequestError) as exc_info:
            RetryOrchestrator().execute(work, RetryPolicy(backoff=NO_WAIT), Recorder().new_session, Recorder().next_session)

        assert exc_info.value is bad
        assert work.attempts == 1

    def test_plain_exception_propagates(self):
        """Exceptions that are not execution failures pass straight through."""
        work = FailingWork(KeyError("missing"))
        with pytest.raises(KeyError):
            RetryOrchestrator().execute(work, RetryPolicy(backoff=NO_WAIT), Recorder().new_session, Recorder().next_session)
        assert work.attempts == 1

    def test_recovery_callbacks_match_liveness(self):
        """Dead sessions are replaced, live sessions are switched."""
        recorder = Recorder()
        work = FailingWork(
            _retriable(InvalidSessionError("gone"), alive=False),
            _retriable(OccConflictError("occ"), alive=True),
        )

        result = RetryOrchestrator().execute(
            work, RetryPolicy(backoff=NO_WAIT), recorder.new_session, recorder.next_session,
            recorder.on_retry,
        )

        assert result == "ok"
        assert recorder.events == [1, "new", 2, "next"]

    def test_expiry_not_retried(self):
        """Transaction expiry surfaces on the first failure."""
        expired = InvalidSessionError("Transaction 123 has expired")
        work = FailingWork(RetriableExecutionError("txn-1", False, expired))

        with pytest.raises(InvalidSessionError):
            RetryOrchestrator().execute(work, RetryPolicy(backoff=NO_WAIT), Recorder().new_session, Recorder().next_session)
        assert work.attempts == 1

    def test_failed_recovery_counts_as_attempt(self):
        """A recovery failing with an execution error consumes a retry."""
        start_failure = ConnectionError("cannot start session")
        calls = {"new": 0}

        def new_session() -> None:
            calls["new"] += 1
            if calls["new"] == 1:
                raise RetriableExecutionError(None, False, start_failure)

        work = FailingWork(_retriable(InvalidSessionError("gone"), alive=False))
        result = RetryOrchestrator().execute(work, RetryPolicy(max_retries=2, backoff=NO_WAIT), new_session, lambda: None)

        assert result == "ok"
        assert calls["new"] == 2
        assert work.attempts == 2

    def test_backoff_receives_context(self):
        """The backoff strategy sees the retry number and the cause."""
        seen: list[RetryPolicyContext] = []

        class RecordingBackoff(ConstantBackoff):
            def get_delay(self, context: RetryPolicyContext) -> float:
                seen.append(context)
                return 0.0

        occ = OccConflictError("occ")
        work = FailingWork(_retriable(occ), _retriable(occ))
        RetryOrchestrator().execute(work, RetryPolicy(3, RecordingBackoff()), lambda: None, lambda: None)

        assert [c.retries_attempted for c in seen] == [1, 2]
        assert all(c.last_exception is occ for c in seen)

    def test_cancelled_before_start(self):
        """A cancelled token stops the loop before any attempt."""
        token = CancellationToken()
        token.cancel()
        work = FailingWork()

        with pytest.raises(OperationCancelledError):
            RetryOrchestrator().execute(work, RetryPolicy(), lambda: None, lambda: None, cancellation=token)
        assert work.attempts == 0

    def test_cancellation_interrupts_backoff(self):
        """Cancelling during a long backoff wakes the loop immediately."""
        token = CancellationToken()
        work = FailingWork(_retriable(OccConflictError("occ")))
        threading.Timer(0.05, token.cancel).start()

        started = time.monotonic()
        with pytest.raises(OperationCancelledError):
            RetryOrchestrator().execute(
                work, RetryPolicy(1, ConstantBackoff(10.0)), lambda: None, lambda: None,
                cancellation=token,
            )
        assert time.monotonic() - started < 5.0
        assert work.attempts == 1

    def test_metrics(self):
        """Attempts, successes and retries are counted."""
        orchestrator = RetryOrchestrator()
        work = FailingWork(_retriable(OccConflictError("occ")))
        orchestrator.execute(work, RetryPolicy(backoff=NO_WAIT), lambda: None, lambda: None)

        metrics = orchestrator.get_metrics()
        assert metrics == {"total_attempts": 2, "successful_attempts": 1, "retries": 1}

        orchestrator.reset()
        assert orchestrator.get_metrics()["total_attempts"] == 0


class TestRetryOrchestratorAsync:
    """Tests for the asyncio retry loop."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """The async loop follows the same decisions."""
        recorder = Recorder()
        work = FailingWork(
            _retriable(InvalidSessionError("gone"), alive=False),
            _retriable(TransportError("unavailable", status_code=503), alive=True),
            result=42,
        )

        result = await RetryOrchestrator().execute_async(
            work.run_async, RetryPolicy(backoff=NO_WAIT), recorder.new_session_async,
            recorder.next_session_async, recorder.on_retry,
        )

        assert result == 42
        assert recorder.events == [1, "new", 2, "next"]

    @pytest.mark.asyncio
    async def test_k_retries_give_k_plus_one_attempts(self):
        """Exhaustion raises the last underlying failure."""
        work = FailingWork(*[_retriable(OccConflictError(f"occ {i}")) for i in range(3)])

        with pytest.raises(OccConflictError, match="occ 2"):
            await RetryOrchestrator().execute_async(
                work.run_async, RetryPolicy(2, NO_WAIT), Recorder().new_session_async,
                Recorder().next_session_async,
            )
        assert work.attempts == 3

    @pytest.mark.asyncio
    async def test_task_cancellation_during_backoff(self):
        """Cancelling the task during backoff raises CancelledError."""
        work = FailingWork(_retriable(OccConflictError("occ")))
        task = asyncio.create_task(
            RetryOrchestrator().execute_async(
                work.run_async, RetryPolicy(1, ConstantBackoff(10.0)),
                Recorder().new_session_async, Recorder().next_session_async,
            )
        )
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert work.attempts == 1
