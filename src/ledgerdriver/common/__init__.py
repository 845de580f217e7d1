"""Common utilities shared across ledgerdriver modules.

This package contains shared infrastructure components:
- cancellation: Cancellation tokens for blocking callers
- resilience: Retry orchestration, backoff strategies and permits
"""

from __future__ import annotations


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import for common modules."""
    if name == "resilience":
        from ledgerdriver.common import resilience
        return resilience
    if name == "cancellation":
        from ledgerdriver.common import cancellation
        return cancellation
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__: list[str] = ["cancellation", "resilience"]
