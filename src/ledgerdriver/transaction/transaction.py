"""Ledger transactions.

A ``Transaction`` lives on exactly one session. It executes statements,
folds each of them into its ``CommitDigest`` and ends with exactly one commit
or abort; afterwards every operation raises ``TransactionClosedError``.

Units of work never touch a ``Transaction`` directly. They receive a
``TransactionExecutor`` (or ``AsyncTransactionExecutor``) that exposes only
``execute`` and ``abort``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from ledgerdriver.codec import JsonValueCodec, ValueCodec
from ledgerdriver.common.cancellation import CancellationToken, raise_if_cancelled
from ledgerdriver.errors import (
    CommitDigestMismatchError,
    InvalidSessionError,
    OccConflictError,
    TransactionClosedError,
    TransportError,
)
from ledgerdriver.result import AsyncResultStream, ResultStream
from ledgerdriver.transaction.digest import CommitDigest, HashStrategy, Sha256HashStrategy
from ledgerdriver.transport import CommitTransactionResult, FetchPageResult

if TYPE_CHECKING:
    from ledgerdriver.session.session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Aborted:
    """Outcome of a unit of work that aborted its own transaction.

    Example:
        def transfer(txn):
            if balance(txn) < amount:
                return txn.abort()
            ...

        outcome = driver.execute(transfer)
        if isinstance(outcome, Aborted):
            ...
    """

    transaction_id: str


# =============================================================================
# Transaction
# =============================================================================


class Transaction:
    """One open transaction on a session."""

    def __init__(
        self,
        session: "Session",
        transaction_id: str,
        codec: ValueCodec | None = None,
        hash_strategy: HashStrategy | None = None,
    ) -> None:
        self._session = session
        self._transaction_id = transaction_id
        self._codec = codec or JsonValueCodec()
        self._hash_strategy = hash_strategy or Sha256HashStrategy()
        self._digest = CommitDigest.seed(transaction_id, self._hash_strategy)
        self._closed = False
        self._abort_failed = False
        self._lock = threading.Lock()

    @property
    def transaction_id(self) -> str:
        return self._transaction_id

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def abort_failed(self) -> bool:
        """Whether the abort sent after a failed commit was itself rejected."""
        return self._abort_failed

    @property
    def commit_digest(self) -> CommitDigest:
        """Running digest of every statement executed so far."""
        return self._digest

    def execute(
        self,
        statement: str,
        parameters: Sequence[Any] = (),
        cancellation: CancellationToken | None = None,
    ) -> ResultStream:
        """Execute a statement inside this transaction.

        Args:
            statement: Statement text, must not be empty.
            parameters: Values bound to the statement's placeholders, encoded
                with the transaction's codec.
            cancellation: Token checked before each page fetch of the result.

        Raises:
            ValueError: If the statement is empty.
            TransactionClosedError: If the transaction was committed or aborted.
        """
        if not isinstance(statement, str) or not statement:
            raise ValueError("statement must not be None or empty.")
        self._ensure_open()

        blobs = [self._codec.encode(parameter) for parameter in parameters]
        with self._lock:
            self._digest = self._digest.dot(
                CommitDigest.of_statement(statement, blobs, self._hash_strategy)
            )
        result = self._session.execute_statement(self._transaction_id, statement, blobs)
        return ResultStream(self, result, self._codec, cancellation)

    def fetch_page(self, next_page_token: str) -> FetchPageResult:
        """Fetch a continuation page of one of this transaction's results."""
        self._ensure_open()
        return self._session.fetch_page(self._transaction_id, next_page_token)

    def commit(self) -> CommitTransactionResult:
        """Commit and verify the ledger's digest against the local one.

        The transaction is closed afterwards whatever the outcome. When the
        ledger rejects the commit for any reason other than an OCC conflict or
        an invalid session, an abort is sent before the failure is re-raised;
        ``abort_failed`` tells whether that abort was rejected too.

        Raises:
            CommitDigestMismatchError: If the digests differ.
        """
        self._ensure_open()
        try:
            expected = self._digest.value
            result = self._session.commit_transaction(self._transaction_id, expected)
            if result.commit_digest != expected:
                raise CommitDigestMismatchError(
                    self._transaction_id, expected, result.commit_digest
                )
            return result
        except (OccConflictError, InvalidSessionError):
            # The ledger has already ended the transaction
            raise
        except TransportError:
            self._abort_after_failed_commit()
            raise
        finally:
            self._closed = True

    def abort(self) -> Aborted:
        """Abort the transaction. Aborting a closed transaction does nothing."""
        if not self._closed:
            self._closed = True
            self._session.abort_transaction()
        return Aborted(self._transaction_id)

    def _abort_after_failed_commit(self) -> None:
        try:
            self.abort()
        except Exception as error:
            self._abort_failed = True
            logger.warning(
                f"Failed to abort transaction {self._transaction_id} after a failed commit: "
                f"{error!r}"
            )

    def mark_closed(self) -> None:
        """Close locally without telling the ledger."""
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransactionClosedError(self._transaction_id)

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Abort unless the transaction was committed or aborted."""
        if self._closed:
            return
        try:
            self.abort()
        except Exception as error:
            logger.warning(f"Ignored error aborting transaction {self._transaction_id}: {error!r}")

    def __repr__(self) -> str:
        return f"Transaction(id={self._transaction_id!r}, closed={self._closed})"


# =============================================================================
# Executors
# =============================================================================


class TransactionExecutor:
    """What a blocking unit of work sees of its transaction."""

    def __init__(
        self,
        transaction: Transaction,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self._transaction = transaction
        self._cancellation = cancellation

    @property
    def transaction_id(self) -> str:
        return self._transaction.transaction_id

    def execute(self, statement: str, *parameters: Any) -> ResultStream:
        """Execute a statement with positional parameters."""
        raise_if_cancelled(self._cancellation)
        return self._transaction.execute(statement, parameters, self._cancellation)

    def abort(self) -> Aborted:
        """Abort the transaction; return the result from the unit of work."""
        return self._transaction.abort()


class AsyncTransactionExecutor:
    """What a coroutine unit of work sees of its transaction.

    Statement RPCs run in the default executor.
    """

    def __init__(self, transaction: Transaction) -> None:
        self._transaction = transaction

    @property
    def transaction_id(self) -> str:
        return self._transaction.transaction_id

    async def execute(self, statement: str, *parameters: Any) -> AsyncResultStream:
        """Execute a statement with positional parameters."""
        loop = asyncio.get_running_loop()
        stream = await loop.run_in_executor(
            None, self._transaction.execute, statement, parameters
        )
        return AsyncResultStream(stream)

    async def abort(self) -> Aborted:
        """Abort the transaction; return the result from the unit of work."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._transaction.abort)


__all__ = [
    "Aborted",
    "Transaction",
    "TransactionExecutor",
    "AsyncTransactionExecutor",
]
