"""Exception hierarchy for ledgerdriver.

All driver errors derive from ``LedgerDriverError``. Errors raised by the
transport collaborator derive from ``TransportError`` and carry an optional
structured ``ErrorCode`` so that the retry machinery can classify them without
parsing messages.

``ExecutionError`` and ``RetriableExecutionError`` are internal wrappers used
between a session and the retry orchestrator. Callers never see them: the
orchestrator always re-raises the underlying failure.
"""

from __future__ import annotations

import re
from enum import Enum


# =============================================================================
# Messages
# =============================================================================


class ExceptionMessages:
    """Message constants shared by the driver components."""

    DRIVER_CLOSED = "Operation is invalid as this driver has already been closed."
    SESSION_POOL_EMPTY = (
        "Session pool is empty after waiting for a permit. Please close "
        "existing sessions, reduce concurrency or raise max_concurrent_transactions."
    )
    RESULT_CONSUMED = (
        "A result stream can only be iterated once. Please execute a new "
        "statement or buffer the results."
    )
    TRANSACTION_CLOSED = (
        "Operation is invalid as this transaction has been closed after a "
        "commit or abort operation, and cannot be reused."
    )
    TRANSACTION_ALREADY_OPEN = (
        "A transaction is already open on this session. Only one transaction "
        "may be open per session at a time."
    )
    TRANSACTION_DIGEST_MISMATCH = (
        "Transaction's commit digest did not match the value returned by the "
        "ledger. Please retry with a new transaction."
    )
    OPERATION_CANCELLED = "Operation was cancelled."


# =============================================================================
# Driver Errors
# =============================================================================


class LedgerDriverError(Exception):
    """Base exception for all ledgerdriver errors."""

    pass


class DriverClosedError(LedgerDriverError):
    """Raised when an operation is attempted on a closed driver or pool."""

    def __init__(self, message: str = ExceptionMessages.DRIVER_CLOSED) -> None:
        super().__init__(message)


class SessionPoolEmptyError(LedgerDriverError):
    """Raised when no pool permit became available within the pool timeout."""

    def __init__(self, capacity: int, timeout: float) -> None:
        self.capacity = capacity
        self.timeout = timeout
        super().__init__(
            f"{ExceptionMessages.SESSION_POOL_EMPTY} "
            f"(capacity={capacity}, timeout={timeout}s)"
        )


class TransactionClosedError(LedgerDriverError):
    """Raised when a committed or aborted transaction is used again."""

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(ExceptionMessages.TRANSACTION_CLOSED)


class TransactionAlreadyOpenError(LedgerDriverError):
    """Raised when a second transaction is started on a session."""

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(
            f"{ExceptionMessages.TRANSACTION_ALREADY_OPEN} Open transaction: {transaction_id}"
        )


class ResultStreamConsumedError(LedgerDriverError):
    """Raised when a result stream is iterated a second time."""

    def __init__(self) -> None:
        super().__init__(ExceptionMessages.RESULT_CONSUMED)


class CommitDigestMismatchError(LedgerDriverError):
    """Raised when the ledger's commit digest differs from the local one.

    This is an integrity violation, never a transient failure.
    """

    def __init__(self, transaction_id: str, expected: bytes, actual: bytes) -> None:
        self.transaction_id = transaction_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{ExceptionMessages.TRANSACTION_DIGEST_MISMATCH} "
            f"(transaction={transaction_id}, local={expected.hex()}, ledger={actual.hex()})"
        )


class OperationCancelledError(LedgerDriverError):
    """Raised when a cancellation token is triggered during execution."""

    def __init__(self, message: str = ExceptionMessages.OPERATION_CANCELLED) -> None:
        super().__init__(message)


# =============================================================================
# Transport Errors
# =============================================================================


class ErrorCode(Enum):
    """Structured error codes reported by the transport collaborator."""

    INVALID_SESSION = "InvalidSessionException"
    TRANSACTION_EXPIRED = "TransactionExpiredException"
    OCC_CONFLICT = "OccConflictException"
    BAD_REQUEST = "BadRequestException"
    CAPACITY_EXCEEDED = "CapacityExceededException"
    RATE_EXCEEDED = "RateExceededException"
    LIMIT_EXCEEDED = "LimitExceededException"


class TransportError(LedgerDriverError):
    """Base exception for failures reported by the session transport.

    Attributes:
        code: Structured error code, when the transport provides one.
        status_code: HTTP-like status code of the failed command, if known.
    """

    retriable_status_codes: frozenset[int] = frozenset({500, 503})

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_server_unavailable(self) -> bool:
        """Whether the failure is a transient server-side error."""
        return self.status_code in self.retriable_status_codes


class InvalidSessionError(TransportError):
    """The session token is no longer valid on the ledger."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = ErrorCode.INVALID_SESSION,
        status_code: int | None = 400,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)


class OccConflictError(TransportError):
    """Optimistic concurrency conflict detected by the ledger at commit."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = ErrorCode.OCC_CONFLICT,
        status_code: int | None = 400,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)


class BadRequestError(TransportError):
    """The ledger rejected a malformed statement or request."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = ErrorCode.BAD_REQUEST,
        status_code: int | None = 400,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)


class CapacityExceededError(TransportError):
    """The ledger is temporarily over capacity."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = ErrorCode.CAPACITY_EXCEEDED,
        status_code: int | None = 503,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)


_TRANSACTION_EXPIRED_PATTERN = re.compile(r"Transaction\s.*\shas\sexpired")


def is_transaction_expiry(error: BaseException) -> bool:
    """Check whether an invalid-session failure is a transaction expiry.

    The structured ``ErrorCode.TRANSACTION_EXPIRED`` is authoritative. Matching
    the message against ``Transaction <id> has expired`` is kept only as a
    fallback for transports that do not report codes.
    """
    if not isinstance(error, InvalidSessionError):
        return False
    if error.code is ErrorCode.TRANSACTION_EXPIRED:
        return True
    if error.code not in (None, ErrorCode.INVALID_SESSION):
        return False
    return _TRANSACTION_EXPIRED_PATTERN.search(str(error)) is not None


# =============================================================================
# Execution Wrappers
# =============================================================================


class ExecutionError(LedgerDriverError):
    """A unit of work failed; carries what the retry loop needs to decide.

    The underlying failure is chained as ``__cause__`` and exposed as
    ``cause``.
    """

    def __init__(
        self,
        transaction_id: str | None,
        is_session_alive: bool,
        cause: BaseException,
    ) -> None:
        self.transaction_id = transaction_id
        self.is_session_alive = is_session_alive
        self.cause = cause
        super().__init__(f"Transaction {transaction_id or '<none>'} failed: {cause}")
        self.__cause__ = cause


class RetriableExecutionError(ExecutionError):
    """A unit of work failed in a way that may succeed if retried."""

    pass


__all__ = [
    "ExceptionMessages",
    "LedgerDriverError",
    "DriverClosedError",
    "SessionPoolEmptyError",
    "TransactionClosedError",
    "TransactionAlreadyOpenError",
    "ResultStreamConsumedError",
    "CommitDigestMismatchError",
    "OperationCancelledError",
    "ErrorCode",
    "TransportError",
    "InvalidSessionError",
    "OccConflictError",
    "BadRequestError",
    "CapacityExceededError",
    "is_transaction_expiry",
    "ExecutionError",
    "RetriableExecutionError",
]
