"""Ledger sessions.

``Session`` is the raw RPC channel bound to one session token. Every request
is logged at DEBUG before it is sent.

``PooledSession`` is the handle the pool hands out. It owns the liveness flag,
enforces one open transaction at a time and turns failures of a unit of work
into ``ExecutionError`` / ``RetriableExecutionError`` for the retry loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from ledgerdriver.codec import JsonValueCodec, ValueCodec
from ledgerdriver.common.cancellation import CancellationToken, raise_if_cancelled
from ledgerdriver.common.resilience.protocols import Executable, PoolResource
from ledgerdriver.errors import (
    ExecutionError,
    InvalidSessionError,
    OccConflictError,
    OperationCancelledError,
    RetriableExecutionError,
    TransactionAlreadyOpenError,
    TransportError,
    is_transaction_expiry,
)
from ledgerdriver.result import AsyncResultStream, BufferedResult, ResultStream
from ledgerdriver.transaction.digest import HashStrategy, Sha256HashStrategy
from ledgerdriver.transaction.transaction import (
    Aborted,
    AsyncTransactionExecutor,
    Transaction,
    TransactionExecutor,
)
from ledgerdriver.transport import (
    CommitTransactionResult,
    ExecuteStatementResult,
    FetchPageResult,
    SessionTransport,
    StartTransactionResult,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


# =============================================================================
# Session
# =============================================================================


class Session:
    """RPC channel bound to one ledger session token."""

    def __init__(
        self,
        ledger_name: str,
        transport: SessionTransport,
        session_token: str,
        session_id: str | None = None,
    ) -> None:
        self.ledger_name = ledger_name
        self.transport = transport
        self.session_token = session_token
        self.session_id = session_id or session_token

    @classmethod
    def start(cls, ledger_name: str, transport: SessionTransport) -> "Session":
        """Open a new session on the ledger."""
        logger.debug(f"Sending start session request for ledger {ledger_name}")
        result = transport.start_session(ledger_name)
        return cls(ledger_name, transport, result.session_token, result.session_id)

    def start_transaction(self) -> StartTransactionResult:
        logger.debug(f"Sending start transaction request on session {self.session_id}")
        return self.transport.start_transaction(self.session_token)

    def execute_statement(
        self, transaction_id: str, statement: str, parameters: Sequence[bytes]
    ) -> ExecuteStatementResult:
        logger.debug(
            f"Sending execute statement request: transaction={transaction_id}, "
            f"statement={statement!r}, parameters={len(parameters)}"
        )
        return self.transport.execute_statement(
            self.session_token, transaction_id, statement, parameters
        )

    def fetch_page(self, transaction_id: str, next_page_token: str) -> FetchPageResult:
        logger.debug(
            f"Sending fetch page request: transaction={transaction_id}, token={next_page_token}"
        )
        return self.transport.fetch_page(self.session_token, transaction_id, next_page_token)

    def commit_transaction(
        self, transaction_id: str, commit_digest: bytes
    ) -> CommitTransactionResult:
        logger.debug(
            f"Sending commit request: transaction={transaction_id}, digest={commit_digest.hex()}"
        )
        return self.transport.commit_transaction(
            self.session_token, transaction_id, commit_digest
        )

    def abort_transaction(self) -> None:
        logger.debug(f"Sending abort request on session {self.session_id}")
        self.transport.abort_transaction(self.session_token)

    def end(self) -> None:
        logger.debug(f"Sending end session request for session {self.session_id}")
        self.transport.end_session(self.session_token)

    def __repr__(self) -> str:
        return f"Session(ledger={self.ledger_name!r}, id={self.session_id!r})"


# =============================================================================
# Pooled Session
# =============================================================================


class PooledSession(Executable, PoolResource):
    """Pool-managed session that runs units of work in transactions.

    Failure classification:
        - invalid session: session dead; retriable unless the transaction expired
        - OCC conflict: session alive, retriable
        - server 500/503: retriable, liveness decided by a best-effort abort
        - anything else: not retriable, liveness decided by a best-effort abort
    """

    def __init__(
        self,
        session: Session,
        codec: ValueCodec | None = None,
        hash_strategy: HashStrategy | None = None,
    ) -> None:
        self._session = session
        self._codec = codec or JsonValueCodec()
        self._hash_strategy = hash_strategy or Sha256HashStrategy()
        self._alive = True
        self._transaction: Transaction | None = None
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def session(self) -> Session:
        return self._session

    def mark_dead(self) -> None:
        """Never hand this session out again."""
        self._alive = False

    def start_transaction(self) -> Transaction:
        """Start a transaction on this session.

        Raises:
            TransactionAlreadyOpenError: If a transaction is already open here.
        """
        with self._lock:
            if self._transaction is not None and not self._transaction.is_closed:
                raise TransactionAlreadyOpenError(self._transaction.transaction_id)
            result = self._session.start_transaction()
            self._transaction = Transaction(
                self._session, result.transaction_id, self._codec, self._hash_strategy
            )
            return self._transaction

    def execute(
        self,
        func: Callable[[TransactionExecutor], R],
        cancellation: CancellationToken | None = None,
    ) -> R | BufferedResult | Aborted:
        """Run ``func`` in a new transaction and commit it.

        A returned ``ResultStream`` is buffered before the commit so that it
        stays readable afterwards. If the unit of work aborted the
        transaction, ``Aborted`` is returned and nothing is committed.

        Raises:
            ExecutionError: The unit of work failed; ``RetriableExecutionError``
                when retrying may help.
            OperationCancelledError: ``cancellation`` was triggered.
        """
        transaction: Transaction | None = None
        try:
            raise_if_cancelled(cancellation)
            transaction = self.start_transaction()
            result: Any = func(TransactionExecutor(transaction, cancellation))
            if isinstance(result, Aborted):
                return result
            if transaction.is_closed:
                return self._aborted_by_work(transaction)
            if isinstance(result, ResultStream):
                result = result.buffer()
            raise_if_cancelled(cancellation)
            transaction.commit()
            return result
        except OperationCancelledError:
            self._try_abort(transaction)
            raise
        except Exception as error:
            wrapper_cls, alive = self._classify(error, transaction)
            if alive is None:
                alive = self._try_abort(transaction)
            raise wrapper_cls(self._transaction_id(transaction), alive, error) from error

    async def execute_async(
        self,
        func: Callable[[AsyncTransactionExecutor], Awaitable[R]],
    ) -> R | BufferedResult | Aborted:
        """Coroutine variant of ``execute``.

        Transport RPCs run in the default executor. If the calling task is
        cancelled the session is marked dead, because the interrupted RPC may
        still be in flight.
        """
        loop = asyncio.get_running_loop()
        transaction: Transaction | None = None
        try:
            transaction = await loop.run_in_executor(None, self.start_transaction)
            result: Any = await func(AsyncTransactionExecutor(transaction))
            if isinstance(result, Aborted):
                return result
            if transaction.is_closed:
                return self._aborted_by_work(transaction)
            if isinstance(result, AsyncResultStream):
                result = await result.buffer()
            elif isinstance(result, ResultStream):
                result = await loop.run_in_executor(None, result.buffer)
            await loop.run_in_executor(None, transaction.commit)
            return result
        except asyncio.CancelledError:
            logger.debug(f"Execution cancelled, discarding session {self.session_id}")
            self.mark_dead()
            if transaction is not None:
                transaction.mark_closed()
            raise
        except Exception as error:
            wrapper_cls, alive = self._classify(error, transaction)
            if alive is None:
                alive = await loop.run_in_executor(None, self._try_abort, transaction)
            raise wrapper_cls(self._transaction_id(transaction), alive, error) from error

    def _classify(
        self, error: Exception, transaction: Transaction | None
    ) -> tuple[type[ExecutionError], bool | None]:
        """Map a failure to its wrapper and session liveness.

        A liveness of None means it depends on whether an abort succeeds.
        """
        if isinstance(error, TransactionAlreadyOpenError):
            return ExecutionError, True

        if isinstance(error, InvalidSessionError):
            if is_transaction_expiry(error):
                return ExecutionError, None
            self.mark_dead()
            if transaction is not None:
                transaction.mark_closed()
            return RetriableExecutionError, False

        if isinstance(error, OccConflictError):
            # The ledger has already aborted the transaction
            if transaction is not None:
                transaction.mark_closed()
            return RetriableExecutionError, True

        if isinstance(error, TransportError) and error.is_server_unavailable:
            return RetriableExecutionError, None

        return ExecutionError, None

    def _try_abort(self, transaction: Transaction | None) -> bool:
        """Abort without raising; report whether the session survived."""
        if transaction is not None and transaction.abort_failed:
            self.mark_dead()
            return False
        try:
            if transaction is not None:
                transaction.abort()
            else:
                self._session.abort_transaction()
        except Exception as error:
            logger.warning(f"This session is invalid on ABORT: {error!r}")
            self.mark_dead()
            return False
        return True

    @staticmethod
    def _aborted_by_work(transaction: Transaction) -> Aborted:
        logger.debug(
            f"Transaction {transaction.transaction_id} was aborted by the unit of work, "
            f"skipping commit"
        )
        return Aborted(transaction.transaction_id)

    @staticmethod
    def _transaction_id(transaction: Transaction | None) -> str | None:
        return transaction.transaction_id if transaction is not None else None

    def close(self) -> None:
        """End the session on the ledger, ignoring failures."""
        self._alive = False
        try:
            self._session.end()
        except Exception as error:
            logger.warning(f"Ignored error ending session {self.session_id}: {error!r}")

    def __repr__(self) -> str:
        return f"PooledSession(id={self.session_id!r}, alive={self._alive})"


__all__ = ["Session", "PooledSession"]
