"""
Run-scoped logging context.

While a run is active every record passing through a configured handler
carries its ``run_id``, including records logged from worker threads.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

_lock = threading.Lock()
_run_id: str | None = None


def current_run_id() -> str | None:
    return _run_id


class RunContextFilter(logging.Filter):
    """Stamps the active run id onto records that do not already have one."""

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = _run_id
        if run_id is not None and not hasattr(record, "run_id"):
            record.run_id = run_id
        return True


@contextmanager
def run_log_context(run_id: str) -> Iterator[None]:
    """
    Tag log records with ``run_id`` for the duration of the block.

    Example:
        >>> with run_log_context("3f2a9c1b0d4e"):
        ...     logger.info("Seeding watermarks")  # [run_id=3f2a9c1b0d4e]
    """
    global _run_id
    with _lock:
        previous, _run_id = _run_id, run_id
    try:
        yield
    finally:
        with _lock:
            _run_id = previous
