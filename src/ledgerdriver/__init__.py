"""ledgerdriver - Transactional execution engine for a remote ledger database."""

from ledgerdriver.codec import JsonValueCodec, ValueCodec
from ledgerdriver.config import DriverConfig
from ledgerdriver.driver import AsyncLedgerDriver, LedgerDriver
from ledgerdriver.errors import (
    BadRequestError,
    CapacityExceededError,
    CommitDigestMismatchError,
    DriverClosedError,
    ErrorCode,
    InvalidSessionError,
    LedgerDriverError,
    OccConflictError,
    OperationCancelledError,
    ResultStreamConsumedError,
    SessionPoolEmptyError,
    TransactionAlreadyOpenError,
    TransactionClosedError,
    TransportError,
)
from ledgerdriver.result import AsyncResultStream, BufferedResult, ResultStream
from ledgerdriver.transaction import Aborted, CommitDigest

# Resilience
from ledgerdriver.common.cancellation import CancellationToken
from ledgerdriver.common.resilience import (
    ConstantBackoff,
    ExponentialBackoff,
    RetryPolicy,
    RetryPolicyContext,
)

# Version: Single source of truth from pyproject.toml
try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version("ledgerdriver")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

__all__ = [
    # Drivers
    "LedgerDriver",
    "AsyncLedgerDriver",
    "DriverConfig",
    # Results
    "ResultStream",
    "AsyncResultStream",
    "BufferedResult",
    "Aborted",
    "CommitDigest",
    # Codecs
    "ValueCodec",
    "JsonValueCodec",
    # Resilience
    "CancellationToken",
    "RetryPolicy",
    "RetryPolicyContext",
    "ExponentialBackoff",
    "ConstantBackoff",
    # Errors
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
    # Version
    "__version__",
]
