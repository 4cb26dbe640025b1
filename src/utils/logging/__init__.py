"""
Structured logging configuration for the staging job

Usage:
    from utils.logging import setup_logging

    # Call once at process startup
    setup_logging(level="INFO", json_format=True)

    logger = logging.getLogger(__name__)
    logger.info("Staged changes", extra={"table_name": "dbo.Orders", "rows": 3})
"""

from .config import configure_from_env, setup_logging, shutdown_logging
from .context import RunContextFilter, current_run_id, run_log_context
from .formatters import ConsoleFormatter, JSONFormatter

__all__ = [
    "setup_logging",
    "configure_from_env",
    "shutdown_logging",
    "run_log_context",
    "current_run_id",
    "RunContextFilter",
    "JSONFormatter",
    "ConsoleFormatter",
]
