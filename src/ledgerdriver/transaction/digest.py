"""Commit digest accumulation.

Every statement executed in a transaction folds into a running digest. At
commit time the ledger computes the same value from what it actually ran, and
the two must match byte for byte.

    seed      = H(transaction_id)
    statement = H(sql) . H(param_1) . ... . H(param_n)
    running   = running . statement

where ``a . b = SHA-256(join(a, b))`` and ``join`` concatenates the two
digests smaller-first under the ledger's hash ordering.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, Protocol, runtime_checkable

HASH_SIZE = 32


# =============================================================================
# Hash Strategy
# =============================================================================


@runtime_checkable
class HashStrategy(Protocol):
    """How statements and parameter values are turned into digests."""

    def hash_string(self, value: str) -> bytes:
        """Digest of a string value (transaction ids, statements)."""
        ...

    def hash_value(self, blob: bytes) -> bytes:
        """Digest of an encoded parameter value."""
        ...


class Sha256HashStrategy:
    """SHA-256 over UTF-8 strings and raw encoded values."""

    def hash_string(self, value: str) -> bytes:
        return hashlib.sha256(value.encode("utf-8")).digest()

    def hash_value(self, blob: bytes) -> bytes:
        return hashlib.sha256(blob).digest()


# =============================================================================
# Ordering and Joining
# =============================================================================


def _signed(byte: int) -> int:
    return byte - 256 if byte > 127 else byte


def compare_hashes(h1: bytes, h2: bytes) -> int:
    """Order two digests the way the ledger does.

    Bytes are compared from the last index down to the first, each read as a
    signed 8-bit value.

    Returns:
        Negative, zero or positive like a classic comparator.
    """
    if len(h1) != HASH_SIZE or len(h2) != HASH_SIZE:
        raise ValueError("Invalid hash")
    for i in range(HASH_SIZE - 1, -1, -1):
        difference = _signed(h1[i]) - _signed(h2[i])
        if difference != 0:
            return difference
    return 0


def join(h1: bytes, h2: bytes) -> bytes:
    """Join two digests pairwise.

    An empty operand yields the other one unchanged; otherwise the smaller
    digest comes first. The result does not depend on argument order.
    """
    if not h1:
        return h2
    if not h2:
        return h1
    if compare_hashes(h1, h2) < 0:
        return h1 + h2
    return h2 + h1


# =============================================================================
# Commit Digest
# =============================================================================


@dataclass(frozen=True)
class CommitDigest:
    """Immutable running digest.

    Attributes:
        value: Either 32 bytes or empty (the identity for ``join``).
    """

    value: bytes = b""

    def __post_init__(self) -> None:
        """Validate digest size."""
        if len(self.value) not in (0, HASH_SIZE):
            raise ValueError(f"Hashes must either be empty or {HASH_SIZE} bytes long")

    @property
    def is_empty(self) -> bool:
        return not self.value

    def dot(self, other: "CommitDigest") -> "CommitDigest":
        """Combine with another digest into a new one."""
        return CommitDigest(hashlib.sha256(join(self.value, other.value)).digest())

    def hex(self) -> str:
        return self.value.hex()

    def __bytes__(self) -> bytes:
        return self.value

    @classmethod
    def seed(cls, transaction_id: str, strategy: HashStrategy | None = None) -> "CommitDigest":
        """Initial digest of a transaction."""
        strategy = strategy or Sha256HashStrategy()
        return cls(strategy.hash_string(transaction_id))

    @classmethod
    def of_statement(
        cls,
        statement: str,
        parameters: Iterable[bytes] = (),
        strategy: HashStrategy | None = None,
    ) -> "CommitDigest":
        """Digest of one statement together with its encoded parameters."""
        strategy = strategy or Sha256HashStrategy()
        digest = cls(strategy.hash_string(statement))
        for blob in parameters:
            digest = digest.dot(cls(strategy.hash_value(blob)))
        return digest


EMPTY = CommitDigest()


__all__ = [
    "HASH_SIZE",
    "HashStrategy",
    "Sha256HashStrategy",
    "compare_hashes",
    "join",
    "CommitDigest",
    "EMPTY",
]
