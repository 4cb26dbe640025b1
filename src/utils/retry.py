"""
Retry with exponential backoff for transient database failures

Used by the staging job to give the change feed and the staging sink a
bounded number of immediate retries inside one table task before the table
is reported as failed.

Usage:
    from utils.retry import retry_with_backoff

    @retry_with_backoff(max_retries=3, retryable_exceptions=(SinkTransient,))
    def write_rows(rows):
        sink.write(rows)
"""

import logging
import random
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)

# Substrings of driver messages / exception names that indicate a transient fault
RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "deadlock",
    "lock request time out",
    "connection",
    "communication link failure",
    "broken pipe",
    "network error",
    "server has gone away",
    "transport-level error",
)

# pyodbc SQLSTATE classes for connection failures and timeouts
RETRYABLE_SQLSTATES = ("08", "HYT00", "HYT01", "40001")

RETRYABLE_EXCEPTION_NAMES = (
    "connectionerror",
    "timeouterror",
    "operationalerror",
    "interfaceerror",
)


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    Jitter spreads the delay by +/-25% so parallel table tasks that failed
    together do not retry in lockstep.
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter and delay > 0:
        spread = delay * 0.25
        delay = max(0.0, delay + random.uniform(-spread, spread))
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator that retries a function on the given exception types.

    Exceptions outside ``retryable_exceptions`` propagate on the first
    occurrence; retryable ones propagate after ``max_retries`` retries.

    Args:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between consecutive delays
        jitter: Randomize each delay by +/-25%
        retryable_exceptions: Exception types worth retrying
        on_retry: Callback ``(attempt, exception, delay)`` before each sleep
        sleep: Sleep function, replaceable in tests

    Example:
        @retry_with_backoff(max_retries=5, retryable_exceptions=(ConnectionError,))
        def connect():
            return pyodbc.connect(connection_string)
    """
    def decorator(func: Callable) -> Callable:
        func_name = getattr(func, "__name__", "function")

        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = compute_backoff_delay(
                        attempt, base_delay, max_delay, exponential_base, jitter
                    )
                    attempt += 1
                    logger.warning(
                        f"Attempt {attempt}/{max_retries + 1} failed for {func_name}: "
                        f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s"
                    )

                    if on_retry:
                        try:
                            on_retry(attempt, e, delay)
                        except Exception as callback_error:
                            logger.error(f"Error in retry callback: {callback_error}")

                    sleep(delay)

        return wrapper
    return decorator


def is_retryable_db_exception(exception: BaseException) -> bool:
    """
    Whether a database driver exception looks transient.

    Checks the pyodbc SQLSTATE (first element of ``args``), the exception
    type name and the message text.
    """
    args = getattr(exception, "args", ())
    if args and isinstance(args[0], str) and args[0].startswith(RETRYABLE_SQLSTATES):
        return True

    exception_type = type(exception).__name__.lower()
    if exception_type in RETRYABLE_EXCEPTION_NAMES:
        return True

    message = str(exception).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)
