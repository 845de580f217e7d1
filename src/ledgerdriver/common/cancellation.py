"""Cancellation tokens for blocking callers.

Asyncio callers cancel through their task; blocking callers pass a
``CancellationToken`` that every RPC-issuing step checks before sending and
that backoff waits observe.
"""

from __future__ import annotations

import threading

from ledgerdriver.errors import OperationCancelledError


class CancellationToken:
    """Thread-safe, one-shot cancellation signal.

    Example:
        token = CancellationToken()
        threading.Timer(5.0, token.cancel).start()
        driver.execute(work, cancellation=token)
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise ``OperationCancelledError`` if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation.

        Returns:
            True if cancellation was requested.
        """
        return self._event.wait(timeout)


def raise_if_cancelled(token: CancellationToken | None) -> None:
    """Check an optional token."""
    if token is not None:
        token.raise_if_cancelled()


__all__ = ["CancellationToken", "raise_if_cancelled"]
