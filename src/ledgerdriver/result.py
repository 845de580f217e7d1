"""Statement results.

A ``ResultStream`` is a lazy, single-pass iterator over the documents
returned by one statement. The first page arrives with the execute response;
later pages are fetched on demand through the owning transaction, which
refuses to fetch once it has been committed or aborted.

``AsyncResultStream`` wraps a stream for ``async for`` and fetches pages off
the event loop. ``BufferedResult`` is a materialized, re-iterable snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterator

from ledgerdriver.codec import ValueCodec
from ledgerdriver.common.cancellation import CancellationToken, raise_if_cancelled
from ledgerdriver.errors import ResultStreamConsumedError
from ledgerdriver.transport import ExecuteStatementResult, FetchPageResult, IOUsage, Page, TimingInformation

if TYPE_CHECKING:
    from ledgerdriver.transaction.transaction import Transaction

logger = logging.getLogger(__name__)


def _accumulate(current: Any, reported: Any) -> Any:
    if reported is None:
        return current
    if current is None:
        return reported
    return current + reported


# =============================================================================
# Result Stream
# =============================================================================


class ResultStream:
    """Single-pass iterator over the documents of one statement.

    Example:
        stream = txn.execute("SELECT * FROM Person WHERE age > ?", 30)
        for person in stream:
            print(person)
        print(stream.consumed_ios, stream.timing_information)
    """

    def __init__(
        self,
        transaction: "Transaction",
        result: ExecuteStatementResult,
        codec: ValueCodec,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self._transaction = transaction
        self._codec = codec
        self._cancellation = cancellation
        self._page: Page = result.first_page
        self._consumed_ios: IOUsage | None = result.consumed_ios
        self._timing_information: TimingInformation | None = result.timing_information
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def transaction_id(self) -> str:
        return self._transaction.transaction_id

    @property
    def consumed_ios(self) -> IOUsage | None:
        """Cumulative IOs of every page fetched so far, None if never reported."""
        return self._consumed_ios

    @property
    def timing_information(self) -> TimingInformation | None:
        """Cumulative server processing time, None if never reported."""
        return self._timing_information

    @property
    def is_consumed(self) -> bool:
        return self._consumed

    def __iter__(self) -> Iterator[Any]:
        self._claim()
        return self._iterate()

    def buffer(self) -> "BufferedResult":
        """Read every remaining document into a ``BufferedResult``."""
        values = list(self)
        return BufferedResult(values, self._consumed_ios, self._timing_information)

    def _claim(self) -> None:
        with self._lock:
            if self._consumed:
                raise ResultStreamConsumedError()
            self._consumed = True

    def _iterate(self) -> Iterator[Any]:
        while True:
            for blob in self._current_values():
                yield self._codec.decode(blob)
            token = self._page.next_page_token
            if token is None:
                return
            self._load_next_page(token)

    def _current_values(self) -> list[bytes]:
        return self._page.values

    def _load_next_page(self, token: str) -> None:
        raise_if_cancelled(self._cancellation)
        fetched: FetchPageResult = self._transaction.fetch_page(token)
        self._page = fetched.page
        self._consumed_ios = _accumulate(self._consumed_ios, fetched.consumed_ios)
        self._timing_information = _accumulate(
            self._timing_information, fetched.timing_information
        )

    def __repr__(self) -> str:
        return (
            f"ResultStream(transaction_id={self.transaction_id!r}, "
            f"consumed={self._consumed})"
        )


class AsyncResultStream:
    """Async wrapper for a result stream.

    Page fetches run in the default executor so the event loop is never
    blocked on the transport.
    """

    def __init__(self, stream: ResultStream) -> None:
        self._stream = stream

    @property
    def transaction_id(self) -> str:
        return self._stream.transaction_id

    @property
    def consumed_ios(self) -> IOUsage | None:
        return self._stream.consumed_ios

    @property
    def timing_information(self) -> TimingInformation | None:
        return self._stream.timing_information

    @property
    def is_consumed(self) -> bool:
        return self._stream.is_consumed

    def __aiter__(self) -> AsyncIterator[Any]:
        self._stream._claim()
        return self._iterate()

    async def buffer(self) -> "BufferedResult":
        """Read every remaining document into a ``BufferedResult``."""
        values = [value async for value in self]
        return BufferedResult(values, self.consumed_ios, self.timing_information)

    async def _iterate(self) -> AsyncIterator[Any]:
        stream = self._stream
        loop = asyncio.get_running_loop()
        while True:
            for blob in stream._current_values():
                yield stream._codec.decode(blob)
            token = stream._page.next_page_token
            if token is None:
                return
            await loop.run_in_executor(None, stream._load_next_page, token)


# =============================================================================
# Buffered Result
# =============================================================================


class BufferedResult:
    """Materialized statement result that can be iterated any number of times."""

    def __init__(
        self,
        values: list[Any],
        consumed_ios: IOUsage | None = None,
        timing_information: TimingInformation | None = None,
    ) -> None:
        self._values = values
        self._consumed_ios = consumed_ios
        self._timing_information = timing_information

    @property
    def consumed_ios(self) -> IOUsage | None:
        return self._consumed_ios

    @property
    def timing_information(self) -> TimingInformation | None:
        return self._timing_information

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __getitem__(self, index: int) -> Any:
        return self._values[index]

    def to_list(self) -> list[Any]:
        return list(self._values)

    def __repr__(self) -> str:
        return f"BufferedResult(size={len(self._values)})"


__all__ = ["ResultStream", "AsyncResultStream", "BufferedResult"]
