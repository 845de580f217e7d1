"""Mock implementations for driver testing.

This module provides an in-memory implementation of the ``SessionTransport``
protocol, allowing tests to run without a real ledger.
"""

from tests.mocks.ledger_mocks import (
    MockCall,
    MockLedgerTransport,
    MockTransactionState,
    always_fail,
    create_mock_transport,
    create_vehicle_transport,
)

__all__ = [
    "MockCall",
    "MockLedgerTransport",
    "MockTransactionState",
    "always_fail",
    "create_mock_transport",
    "create_vehicle_transport",
]
