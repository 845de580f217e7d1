"""Driver façade.

``LedgerDriver`` (blocking) and ``AsyncLedgerDriver`` (asyncio) are the entry
points of the library. Both own a ``SessionPool`` and expose the same
operations:

- ``execute(func)``: run a unit of work in a transaction, with retries
- ``list_table_names()``: names of the active tables of the ledger
- ``start_transaction()``: a manually committed transaction
- ``close()``: end every pooled session

Example:
    from ledgerdriver import DriverConfig, LedgerDriver

    with LedgerDriver(DriverConfig("vehicles"), transport) as driver:
        driver.execute(lambda txn: txn.execute("INSERT INTO Car ?", {"vin": "1"}))
        cars = driver.execute(lambda txn: txn.execute("SELECT * FROM Car"))
        for car in cars:
            print(car)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from ledgerdriver.codec import JsonValueCodec, ValueCodec
from ledgerdriver.common.cancellation import CancellationToken
from ledgerdriver.common.resilience.config import RetryPolicy
from ledgerdriver.common.resilience.retry import unwrap
from ledgerdriver.config import DriverConfig
from ledgerdriver.errors import ExecutionError, InvalidSessionError
from ledgerdriver.result import AsyncResultStream, ResultStream
from ledgerdriver.session.pool import SessionPool
from ledgerdriver.session.session import PooledSession, Session
from ledgerdriver.transaction.digest import HashStrategy, Sha256HashStrategy
from ledgerdriver.transaction.transaction import (
    Aborted,
    AsyncTransactionExecutor,
    Transaction,
    TransactionExecutor,
)
from ledgerdriver.transport import CommitTransactionResult, SessionTransport

logger = logging.getLogger(__name__)

R = TypeVar("R")

TABLE_NAMES_STATEMENT = (
    "SELECT VALUE name FROM information_schema.user_tables WHERE status = 'ACTIVE'"
)


def _build_pool(
    config: DriverConfig,
    transport: SessionTransport,
    codec: ValueCodec,
    hash_strategy: HashStrategy,
) -> SessionPool:
    def start_session() -> PooledSession:
        return PooledSession(Session.start(config.ledger_name, transport), codec, hash_strategy)

    return SessionPool(
        start_session,
        max_concurrent_transactions=config.max_concurrent_transactions,
        pool_timeout=config.pool_timeout,
        retry_policy=config.retry_policy,
    )


def _acquire(pool: SessionPool) -> PooledSession:
    try:
        return pool.acquire()
    except ExecutionError as error:
        failure = error
    raise unwrap(failure)


def _begin(pool: SessionPool, session: PooledSession) -> Transaction:
    try:
        return session.start_transaction()
    except InvalidSessionError:
        session.mark_dead()
        pool.release(session)
        raise
    except BaseException:
        pool.release(session)
        raise


# =============================================================================
# Manual Transactions
# =============================================================================


class ManualTransaction:
    """A transaction the caller commits or aborts explicitly.

    Holds its pooled session until committed, aborted or closed. Leaving the
    ``with`` block without committing aborts the transaction. No retries are
    attempted.

    Example:
        with driver.start_transaction() as txn:
            txn.execute("UPDATE Car SET owner = ? WHERE vin = ?", "alice", "1")
            txn.commit()
    """

    def __init__(self, pool: SessionPool, session: PooledSession, transaction: Transaction) -> None:
        self._pool = pool
        self._session = session
        self._transaction = transaction
        self._released = False

    @property
    def transaction_id(self) -> str:
        return self._transaction.transaction_id

    @property
    def is_closed(self) -> bool:
        return self._transaction.is_closed

    def execute(self, statement: str, *parameters: Any) -> ResultStream:
        return self._call(self._transaction.execute, statement, parameters)

    def commit(self) -> CommitTransactionResult:
        try:
            return self._call(self._transaction.commit)
        finally:
            if self._transaction.abort_failed:
                self._session.mark_dead()
            self._release()

    def abort(self) -> Aborted:
        try:
            return self._call(self._transaction.abort)
        finally:
            self._release()

    def close(self) -> None:
        """Abort if still open and give the session back to the pool."""
        if not self._transaction.is_closed:
            try:
                self._call(self._transaction.abort)
            except Exception as error:
                logger.warning(
                    f"Ignored error aborting transaction {self.transaction_id}: {error!r}"
                )
                self._session.mark_dead()
        self._release()

    def _call(self, func: Callable[..., R], *args: Any) -> R:
        try:
            return func(*args)
        except InvalidSessionError:
            self._session.mark_dead()
            raise

    def _release(self) -> None:
        if not self._released:
            self._released = True
            self._pool.release(self._session)

    def __enter__(self) -> "ManualTransaction":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class AsyncManualTransaction:
    """Coroutine variant of ``ManualTransaction``."""

    def __init__(self, manual: ManualTransaction) -> None:
        self._manual = manual

    @property
    def transaction_id(self) -> str:
        return self._manual.transaction_id

    @property
    def is_closed(self) -> bool:
        return self._manual.is_closed

    async def execute(self, statement: str, *parameters: Any) -> AsyncResultStream:
        loop = asyncio.get_running_loop()
        stream = await loop.run_in_executor(
            None, lambda: self._manual.execute(statement, *parameters)
        )
        return AsyncResultStream(stream)

    async def commit(self) -> CommitTransactionResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._manual.commit)

    async def abort(self) -> Aborted:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._manual.abort)

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._manual.close)

    async def __aenter__(self) -> "AsyncManualTransaction":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


# =============================================================================
# Drivers
# =============================================================================


class LedgerDriver:
    """Blocking driver for one ledger."""

    def __init__(
        self,
        config: DriverConfig,
        transport: SessionTransport,
        *,
        codec: ValueCodec | None = None,
        hash_strategy: HashStrategy | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            config: Driver settings.
            transport: RPC surface of the ledger.
            codec: Parameter and document codec (default JSON).
            hash_strategy: Digest hashing (default SHA-256).
        """
        self._config = config
        self._pool = _build_pool(
            config,
            transport,
            codec or JsonValueCodec(),
            hash_strategy or Sha256HashStrategy(),
        )
        logger.info(
            f"Created driver for ledger {config.ledger_name} "
            f"(max_concurrent_transactions={config.max_concurrent_transactions})"
        )

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def pool(self) -> SessionPool:
        return self._pool

    def execute(
        self,
        func: Callable[[TransactionExecutor], R],
        retry_policy: RetryPolicy | None = None,
        on_retry: Callable[[int], None] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> Any:
        """Run ``func`` in a transaction, retrying retriable failures.

        Args:
            func: Unit of work; receives a ``TransactionExecutor``.
            retry_policy: Overrides the configured policy for this call.
            on_retry: Called with the 1-based retry number before each retry.
            cancellation: Token that stops the call between RPCs.

        Returns:
            What ``func`` returned. A ``ResultStream`` is returned as a
            ``BufferedResult``; ``return txn.abort()`` yields ``Aborted``.
        """
        return self._pool.execute(func, retry_policy, on_retry, cancellation)

    def list_table_names(self, cancellation: CancellationToken | None = None) -> list[str]:
        """Names of every active table in the ledger."""
        result = self.execute(
            lambda txn: txn.execute(TABLE_NAMES_STATEMENT), cancellation=cancellation
        )
        return [str(name) for name in result]

    def start_transaction(self) -> ManualTransaction:
        """Check out a session and start a manually committed transaction."""
        session = _acquire(self._pool)
        return ManualTransaction(self._pool, session, _begin(self._pool, session))

    def close(self) -> None:
        """Close the driver and end every pooled session."""
        self._pool.close()

    def __enter__(self) -> "LedgerDriver":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class AsyncLedgerDriver:
    """Asyncio driver for one ledger.

    Transport RPCs run in the loop's default executor.
    """

    def __init__(
        self,
        config: DriverConfig,
        transport: SessionTransport,
        *,
        codec: ValueCodec | None = None,
        hash_strategy: HashStrategy | None = None,
    ) -> None:
        self._config = config
        self._pool = _build_pool(
            config,
            transport,
            codec or JsonValueCodec(),
            hash_strategy or Sha256HashStrategy(),
        )
        logger.info(
            f"Created async driver for ledger {config.ledger_name} "
            f"(max_concurrent_transactions={config.max_concurrent_transactions})"
        )

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def pool(self) -> SessionPool:
        return self._pool

    async def execute(
        self,
        func: Callable[[AsyncTransactionExecutor], Awaitable[R]],
        retry_policy: RetryPolicy | None = None,
        on_retry: Callable[[int], None] | None = None,
    ) -> Any:
        """Run the coroutine function ``func`` in a transaction, with retries."""
        return await self._pool.execute_async(func, retry_policy, on_retry)

    async def list_table_names(self) -> list[str]:
        """Names of every active table in the ledger."""

        async def read_names(txn: AsyncTransactionExecutor) -> list[str]:
            stream = await txn.execute(TABLE_NAMES_STATEMENT)
            return [str(name) async for name in stream]

        return await self.execute(read_names)

    async def start_transaction(self) -> AsyncManualTransaction:
        """Check out a session and start a manually committed transaction."""
        loop = asyncio.get_running_loop()
        session = await loop.run_in_executor(None, _acquire, self._pool)
        transaction = await loop.run_in_executor(None, _begin, self._pool, session)
        return AsyncManualTransaction(ManualTransaction(self._pool, session, transaction))

    async def close(self) -> None:
        """Close the driver and end every pooled session."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._pool.close)

    async def __aenter__(self) -> "AsyncLedgerDriver":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


__all__ = [
    "TABLE_NAMES_STATEMENT",
    "ManualTransaction",
    "AsyncManualTransaction",
    "LedgerDriver",
    "AsyncLedgerDriver",
]
