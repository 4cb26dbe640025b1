"""
Pooled SQL Server connections.

Table tasks run on worker threads; each borrows its own connection from
the pool for the duration of one provider, store or sink call.
"""

from .base import (
    BaseConnectionPool,
    ConnectionPoolError,
    PoolClosedError,
    PooledConnection,
    PoolExhaustedError,
)
from .sqlserver import SQLServerConnectionPool

__all__ = [
    "BaseConnectionPool",
    "SQLServerConnectionPool",
    "PooledConnection",
    "ConnectionPoolError",
    "PoolExhaustedError",
    "PoolClosedError",
]
