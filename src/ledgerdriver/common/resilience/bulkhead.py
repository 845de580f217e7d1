"""Counting permit bounding concurrent transactions.

The session pool holds one permit per checked-out session, so the number of
sessions in use never exceeds the bulkhead's capacity.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Any, Generator

from ledgerdriver.errors import SessionPoolEmptyError

logger = logging.getLogger(__name__)


class SemaphoreBulkhead:
    """Semaphore-based bulkhead.

    Uses a counting semaphore to limit concurrent executions. Blocking and
    asyncio callers share the same semaphore.

    Example:
        bulkhead = SemaphoreBulkhead("ledger", max_concurrent=10)

        with bulkhead.limit(timeout=0.001):
            run_transaction()
    """

    def __init__(self, name: str, max_concurrent: int) -> None:
        """Initialize semaphore bulkhead.

        Args:
            name: Name used in logs and metrics.
            max_concurrent: Number of permits.
        """
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")

        self._name = name
        self._max_concurrent = max_concurrent
        self._semaphore = threading.Semaphore(max_concurrent)
        self._lock = threading.Lock()
        self._active_count = 0
        self._total_acquired = 0
        self._total_rejected = 0

    @property
    def name(self) -> str:
        """Get bulkhead name."""
        return self._name

    @property
    def max_concurrent(self) -> int:
        """Get the number of permits."""
        return self._max_concurrent

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a permit, waiting at most ``timeout`` seconds."""
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        self._record(acquired)
        return acquired

    async def acquire_async(self, timeout: float | None = None) -> bool:
        """Acquire a permit without blocking the event loop."""
        if self._semaphore.acquire(blocking=False):
            self._record(True)
            return True
        if timeout is not None and timeout <= 0:
            self._record(False)
            return False

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.acquire, timeout)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(self._release_orphan)
            raise

    def _release_orphan(self, future: "asyncio.Future[bool]") -> None:
        """Give back a permit acquired for a task that was cancelled meanwhile."""
        if not future.cancelled() and future.exception() is None and future.result():
            self.release()

    def release(self) -> None:
        """Release a permit."""
        with self._lock:
            if self._active_count <= 0:
                raise RuntimeError(f"Bulkhead '{self._name}' released more often than acquired")
            self._active_count -= 1
        self._semaphore.release()

    def available_slots(self) -> int:
        """Get number of available permits."""
        with self._lock:
            return self._max_concurrent - self._active_count

    @contextmanager
    def limit(self, timeout: float | None = None) -> Generator[None, None, None]:
        """Context manager holding a permit for the duration of the block."""
        if not self.acquire(timeout):
            raise SessionPoolEmptyError(self._max_concurrent, timeout or 0.0)
        try:
            yield
        finally:
            self.release()

    def get_metrics(self) -> dict[str, Any]:
        """Get bulkhead metrics."""
        with self._lock:
            return {
                "name": self._name,
                "max_concurrent": self._max_concurrent,
                "available_slots": self._max_concurrent - self._active_count,
                "total_acquired": self._total_acquired,
                "total_rejected": self._total_rejected,
            }

    def _record(self, acquired: bool) -> None:
        with self._lock:
            if acquired:
                self._active_count += 1
                self._total_acquired += 1
            else:
                self._total_rejected += 1


__all__ = ["SemaphoreBulkhead"]
