"""Resilience building blocks for the ledger driver.

Key pieces:
- RetryOrchestrator: retriable-execute loop with session recovery callbacks
- RetryPolicy: retry limit plus backoff strategy
- SemaphoreBulkhead: counting permit bounding concurrent transactions

Example:
    from ledgerdriver.common.resilience import (
        ExponentialBackoff,
        RetryOrchestrator,
        RetryPolicy,
    )

    policy = RetryPolicy(max_retries=2, backoff=ExponentialBackoff(sleep_base_ms=20))
    RetryOrchestrator().execute(work, policy, replace_session, switch_session)
"""

from ledgerdriver.common.resilience.protocols import (
    Executable,
    Retriable,
    PoolResource,
)
from ledgerdriver.common.resilience.config import (
    RetryPolicy,
    RetryPolicyContext,
)
from ledgerdriver.common.resilience.retry import (
    BackoffStrategy,
    ExponentialBackoff,
    ConstantBackoff,
    RetryDecision,
    RetryOrchestrator,
    decide,
    unwrap,
)
from ledgerdriver.common.resilience.bulkhead import SemaphoreBulkhead

__all__ = [
    # Protocols
    "Executable",
    "Retriable",
    "PoolResource",
    # Config
    "RetryPolicy",
    "RetryPolicyContext",
    # Retry
    "BackoffStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "RetryDecision",
    "RetryOrchestrator",
    "decide",
    "unwrap",
    # Bulkhead
    "SemaphoreBulkhead",
]
