"""
Settings for a staging run.

Loaded from environment variables, then overridden by CLI arguments.
Database variables match the ones the source-side tooling already uses.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any

from utils.sql_safety import split_qualified_name


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


@dataclass(frozen=True)
class StagingSettings:
    """Connection, table and concurrency settings for the staging job."""

    host: str = "localhost"
    port: int = 1433
    database: str = "warehouse_source"
    user: str = "sa"
    password: str | None = field(default=None, repr=False)
    connection_string: str | None = field(default=None, repr=False)
    driver: str = "ODBC Driver 18 for SQL Server"

    watermark_table: str = "etl.ChangeTrackingWatermark"
    staging_table: str = "etl.ChangeTrackingStaging"

    max_workers: int = 4
    table_timeout: float = 3600.0
    timeout_grace: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    actor: str = "ct-staging"

    def __post_init__(self):
        split_qualified_name(self.watermark_table)
        split_qualified_name(self.staging_table)
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.table_timeout <= 0:
            raise ValueError(f"table_timeout must be > 0, got {self.table_timeout}")
        if self.timeout_grace < 0:
            raise ValueError(f"timeout_grace must be >= 0, got {self.timeout_grace}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    @classmethod
    def from_env(cls) -> "StagingSettings":
        """
        Build settings from environment variables.

        Environment variables:
            SQLSERVER_HOST, SQLSERVER_PORT, SQLSERVER_DATABASE,
            SQLSERVER_USER, SQLSERVER_PASSWORD: Tracked database
            SQLSERVER_CONNECTION_STRING: Full ODBC string, overrides the above
            SQLSERVER_DRIVER: ODBC driver name
            CT_WATERMARK_TABLE: schema.table of the watermark table
            CT_STAGING_TABLE: schema.table of the staging table
            CT_MAX_WORKERS: Concurrent table tasks (default: 4)
            CT_TABLE_TIMEOUT: Seconds per table task (default: 3600)
            CT_TIMEOUT_GRACE: Seconds past the timeout before a table task
                stuck in a database call is abandoned (default: 30)
            CT_MAX_RETRIES: Retries after transient failures (default: 3)
            CT_RETRY_BASE_DELAY: First retry delay in seconds (default: 1.0)
            CT_ACTOR: Name recorded in watermark audit columns

        Raises:
            ValueError: If a variable has an invalid value
        """
        defaults = cls()
        return cls(
            host=os.getenv("SQLSERVER_HOST", defaults.host),
            port=_env_int("SQLSERVER_PORT", defaults.port, minimum=1),
            database=os.getenv("SQLSERVER_DATABASE", defaults.database),
            user=os.getenv("SQLSERVER_USER", defaults.user),
            password=os.getenv("SQLSERVER_PASSWORD"),
            connection_string=os.getenv("SQLSERVER_CONNECTION_STRING") or None,
            driver=os.getenv("SQLSERVER_DRIVER", defaults.driver),
            watermark_table=os.getenv("CT_WATERMARK_TABLE", defaults.watermark_table),
            staging_table=os.getenv("CT_STAGING_TABLE", defaults.staging_table),
            max_workers=_env_int("CT_MAX_WORKERS", defaults.max_workers, minimum=1),
            table_timeout=_env_float("CT_TABLE_TIMEOUT", defaults.table_timeout),
            timeout_grace=_env_float("CT_TIMEOUT_GRACE", defaults.timeout_grace),
            max_retries=_env_int("CT_MAX_RETRIES", defaults.max_retries),
            retry_base_delay=_env_float("CT_RETRY_BASE_DELAY", defaults.retry_base_delay),
            actor=os.getenv("CT_ACTOR", defaults.actor),
        )

    def with_overrides(self, **overrides: Any) -> "StagingSettings":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def pool_config(self) -> dict[str, Any]:
        """Keyword arguments for SQLServerConnectionPool."""
        if self.connection_string:
            return {"connection_string": self.connection_string}

        if not self.password:
            raise ValueError(
                "SQL Server password not provided; set SQLSERVER_PASSWORD "
                "or SQLSERVER_CONNECTION_STRING"
            )
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "driver": self.driver,
        }
