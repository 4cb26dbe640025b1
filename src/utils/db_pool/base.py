"""
Thread-safe connection pool with health checks and recycling.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from queue import Empty, LifoQueue
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from utils.tracing import trace_operation

logger = logging.getLogger(__name__)


CONNECTION_POOL_SIZE = Gauge(
    "ct_db_pool_connections",
    "Connections currently owned by the pool",
    ["pool_name", "state"],  # idle, active
)

CONNECTION_POOL_ERRORS = Counter(
    "ct_db_pool_errors_total",
    "Connection pool errors",
    ["pool_name", "error_type"],  # creation, health_check, timeout
)

CONNECTION_ACQUIRE_TIME = Histogram(
    "ct_db_pool_acquire_seconds",
    "Time to acquire a connection from the pool",
    ["pool_name"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)


@dataclass
class PooledConnection:
    """A driver connection plus the bookkeeping used for recycling."""

    connection: Any
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    use_count: int = 0

    def mark_used(self) -> None:
        self.last_used = time.monotonic()
        self.use_count += 1


class ConnectionPoolError(Exception):
    """Base exception for connection pool errors."""


class PoolExhaustedError(ConnectionPoolError):
    """No connection became available within the acquire timeout."""


class PoolClosedError(ConnectionPoolError):
    """The pool was used after ``close()``."""


class BaseConnectionPool:
    """
    Base class for database connection pools.

    Connections are created lazily up to ``max_size``. A connection is
    health-checked when it is handed out if it has been idle longer than
    ``health_check_after`` seconds, and recycled once it exceeds
    ``max_lifetime``. Subclasses implement ``_create_connection``,
    ``_is_connection_healthy`` and ``_close_connection``.
    """

    def __init__(
        self,
        max_size: int = 8,
        max_lifetime: int = 3600,
        health_check_after: int = 30,
        acquire_timeout: float = 30.0,
        pool_name: str = "default",
    ):
        """
        Args:
            max_size: Maximum number of open connections
            max_lifetime: Seconds after which a connection is recycled
            health_check_after: Idle seconds after which a connection is
                health-checked before reuse
            acquire_timeout: Seconds to wait for a free connection
            pool_name: Name used in metrics and logs
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")

        self.max_size = max_size
        self.max_lifetime = max_lifetime
        self.health_check_after = health_check_after
        self.acquire_timeout = acquire_timeout
        self.pool_name = pool_name

        self._idle: LifoQueue[PooledConnection] = LifoQueue()
        self._open_count = 0
        self._lock = threading.Lock()
        self._closed = False

        logger.info(
            f"Initialized {self.__class__.__name__} '{pool_name}' (max={max_size})"
        )

    def _create_connection(self) -> Any:
        raise NotImplementedError

    def _is_connection_healthy(self, conn: Any) -> bool:
        raise NotImplementedError

    def _close_connection(self, conn: Any) -> None:
        raise NotImplementedError

    def _is_reusable(self, pooled: PooledConnection) -> bool:
        now = time.monotonic()
        if now - pooled.created_at > self.max_lifetime:
            logger.debug("Connection exceeded max lifetime, recycling")
            return False

        if now - pooled.last_used <= self.health_check_after:
            return True

        try:
            return self._is_connection_healthy(pooled.connection)
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            CONNECTION_POOL_ERRORS.labels(
                pool_name=self.pool_name, error_type="health_check"
            ).inc()
            return False

    def _discard(self, pooled: PooledConnection) -> None:
        try:
            self._close_connection(pooled.connection)
        except Exception as e:
            logger.warning(f"Error closing connection: {e}")
        finally:
            with self._lock:
                self._open_count -= 1

    def _try_create(self) -> PooledConnection | None:
        with self._lock:
            if self._open_count >= self.max_size:
                return None
            self._open_count += 1

        try:
            return PooledConnection(connection=self._create_connection())
        except Exception:
            with self._lock:
                self._open_count -= 1
            CONNECTION_POOL_ERRORS.labels(
                pool_name=self.pool_name, error_type="creation"
            ).inc()
            raise

    def _update_metrics(self) -> None:
        with self._lock:
            idle = self._idle.qsize()
            active = self._open_count - idle
        CONNECTION_POOL_SIZE.labels(pool_name=self.pool_name, state="idle").set(idle)
        CONNECTION_POOL_SIZE.labels(pool_name=self.pool_name, state="active").set(active)

    def _checkout(self) -> PooledConnection:
        deadline = time.monotonic() + self.acquire_timeout

        while True:
            try:
                pooled = self._idle.get_nowait()
            except Empty:
                pooled = self._try_create()
                if pooled is None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        CONNECTION_POOL_ERRORS.labels(
                            pool_name=self.pool_name, error_type="timeout"
                        ).inc()
                        raise PoolExhaustedError(
                            f"No connection available within {self.acquire_timeout}s"
                        )
                    try:
                        pooled = self._idle.get(timeout=min(remaining, 0.5))
                    except Empty:
                        continue
                else:
                    return pooled

            if self._is_reusable(pooled):
                return pooled

            self._discard(pooled)

    @contextmanager
    def acquire(self) -> Iterator[Any]:
        """
        Borrow a connection for the duration of the ``with`` block.

        Raises:
            PoolClosedError: If the pool is closed
            PoolExhaustedError: If no connection frees up within the timeout
        """
        if self._closed:
            raise PoolClosedError(f"Connection pool '{self.pool_name}' is closed")

        start = time.monotonic()
        with trace_operation(
            "db_pool_acquire", kind=trace.SpanKind.CLIENT, pool_name=self.pool_name
        ):
            pooled = self._checkout()

        pooled.mark_used()
        CONNECTION_ACQUIRE_TIME.labels(pool_name=self.pool_name).observe(
            time.monotonic() - start
        )
        self._update_metrics()

        try:
            yield pooled.connection
        except BaseException:
            # A connection whose block failed may be broken or mid-transaction
            self._discard(pooled)
            self._update_metrics()
            raise

        if self._closed:
            self._discard(pooled)
        else:
            self._idle.put(pooled)
        self._update_metrics()

    def close(self) -> None:
        """Close idle connections and refuse further acquires."""
        if self._closed:
            return

        self._closed = True
        while True:
            try:
                pooled = self._idle.get_nowait()
            except Empty:
                break
            self._discard(pooled)

        self._update_metrics()
        logger.info(f"Connection pool '{self.pool_name}' closed")

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            idle = self._idle.qsize()
            return {
                "pool_name": self.pool_name,
                "open_connections": self._open_count,
                "idle_connections": idle,
                "active_connections": self._open_count - idle,
                "max_size": self.max_size,
                "closed": self._closed,
            }
