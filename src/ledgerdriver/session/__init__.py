"""Sessions and the session pool."""

from ledgerdriver.session.session import PooledSession, Session
from ledgerdriver.session.pool import PoolMetrics, SessionPool

__all__ = ["Session", "PooledSession", "PoolMetrics", "SessionPool"]
