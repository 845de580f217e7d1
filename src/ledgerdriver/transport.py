"""Session transport collaborator.

The transport is the narrow RPC surface of the ledger. Implementations own
networking (including low-level network retries) and raise
``ledgerdriver.errors.TransportError`` subclasses on failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence, runtime_checkable


# =============================================================================
# Statistics
# =============================================================================


@dataclass(frozen=True)
class IOUsage:
    """Read and write IOs reported by the ledger."""

    read_ios: int = 0
    write_ios: int = 0

    def __add__(self, other: "IOUsage") -> "IOUsage":
        return IOUsage(self.read_ios + other.read_ios, self.write_ios + other.write_ios)


@dataclass(frozen=True)
class TimingInformation:
    """Server-side processing time reported by the ledger."""

    processing_time_milliseconds: int = 0

    def __add__(self, other: "TimingInformation") -> "TimingInformation":
        return TimingInformation(
            self.processing_time_milliseconds + other.processing_time_milliseconds
        )


# =============================================================================
# Responses
# =============================================================================


@dataclass(frozen=True)
class Page:
    """One page of encoded result documents."""

    values: list[bytes] = field(default_factory=list)
    next_page_token: str | None = None


@dataclass(frozen=True)
class StartSessionResult:
    session_token: str
    session_id: str | None = None


@dataclass(frozen=True)
class StartTransactionResult:
    transaction_id: str


@dataclass(frozen=True)
class ExecuteStatementResult:
    first_page: Page
    consumed_ios: IOUsage | None = None
    timing_information: TimingInformation | None = None


@dataclass(frozen=True)
class FetchPageResult:
    page: Page
    consumed_ios: IOUsage | None = None
    timing_information: TimingInformation | None = None


@dataclass(frozen=True)
class CommitTransactionResult:
    transaction_id: str
    commit_digest: bytes
    consumed_ios: IOUsage | None = None
    timing_information: TimingInformation | None = None


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class SessionTransport(Protocol):
    """RPC surface of the ledger.

    Every method is blocking. Asyncio callers dispatch them to an executor.
    """

    def start_session(self, ledger_name: str) -> StartSessionResult:
        ...

    def start_transaction(self, session_token: str) -> StartTransactionResult:
        ...

    def execute_statement(
        self,
        session_token: str,
        transaction_id: str,
        statement: str,
        parameters: Sequence[bytes],
    ) -> ExecuteStatementResult:
        ...

    def fetch_page(
        self, session_token: str, transaction_id: str, next_page_token: str
    ) -> FetchPageResult:
        ...

    def commit_transaction(
        self, session_token: str, transaction_id: str, commit_digest: bytes
    ) -> CommitTransactionResult:
        ...

    def abort_transaction(self, session_token: str) -> None:
        ...

    def end_session(self, session_token: str) -> None:
        ...


__all__ = [
    "IOUsage",
    "TimingInformation",
    "Page",
    "StartSessionResult",
    "StartTransactionResult",
    "ExecuteStatementResult",
    "FetchPageResult",
    "CommitTransactionResult",
    "SessionTransport",
]
