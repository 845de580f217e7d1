"""Transactions and commit digests."""

from ledgerdriver.transaction.digest import (
    EMPTY,
    CommitDigest,
    HashStrategy,
    Sha256HashStrategy,
    compare_hashes,
    join,
)
from ledgerdriver.transaction.transaction import (
    Aborted,
    AsyncTransactionExecutor,
    Transaction,
    TransactionExecutor,
)

__all__ = [
    "EMPTY",
    "CommitDigest",
    "HashStrategy",
    "Sha256HashStrategy",
    "compare_hashes",
    "join",
    "Aborted",
    "Transaction",
    "TransactionExecutor",
    "AsyncTransactionExecutor",
]
