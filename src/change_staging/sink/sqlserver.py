"""
SQL Server staging sink.

Expected table layout:

    CREATE TABLE etl.ChangeTrackingStaging (
        SchemaName     NVARCHAR(128) NOT NULL,
        TableName      NVARCHAR(128) NOT NULL,
        KeyColumnName  NVARCHAR(MAX) NOT NULL,
        KeyFingerprint CHAR(64)      NOT NULL,
        CreatedAt      DATETIME2     NOT NULL
    )
"""

import logging
from collections.abc import Iterable

import pyodbc
from opentelemetry import trace

from change_staging.errors import SinkTransient
from change_staging.models import StagedChange
from utils.db_pool import BaseConnectionPool
from utils.retry import is_retryable_db_exception
from utils.sql_safety import quote_qualified_name
from utils.tracing import trace_operation

from .base import StagingSink, distinct_by_fingerprint

logger = logging.getLogger(__name__)


class SQLServerStagingSink(StagingSink):
    """Staging sink backed by one SQL Server table."""

    def __init__(
        self,
        pool: BaseConnectionPool,
        table: str = "etl.ChangeTrackingStaging",
        batch_size: int = 10000,
    ):
        """
        Args:
            pool: Connection pool for the staging database
            table: ``schema.table`` of the staging table
            batch_size: Rows per ``executemany`` call within one write
        """
        self.pool = pool
        self.table = quote_qualified_name(table)
        self.batch_size = batch_size
        self._insert_sql = (
            f"INSERT INTO {self.table} "
            f"(SchemaName, TableName, KeyColumnName, KeyFingerprint, CreatedAt) "
            f"VALUES (?, ?, ?, ?, ?)"
        )

    def reset(self) -> None:
        with trace_operation("reset_staging", kind=trace.SpanKind.CLIENT, table=self.table):
            with self.pool.acquire() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(f"TRUNCATE TABLE {self.table}")
                finally:
                    cursor.close()
        logger.info(f"Staging table {self.table} reset")

    def write(self, rows: Iterable[StagedChange]) -> int:
        distinct = distinct_by_fingerprint(rows)
        if not distinct:
            return 0

        params = [
            (r.schema_name, r.table_name, r.key_column_name, r.key_fingerprint, r.created_at)
            for r in distinct
        ]

        with trace_operation(
            "write_staging", kind=trace.SpanKind.CLIENT, rows=len(params)
        ):
            try:
                with self.pool.acquire() as conn:
                    conn.autocommit = False
                    cursor = conn.cursor()
                    try:
                        cursor.fast_executemany = True
                        for start in range(0, len(params), self.batch_size):
                            cursor.executemany(
                                self._insert_sql, params[start:start + self.batch_size]
                            )
                        conn.commit()
                    except BaseException:
                        conn.rollback()
                        raise
                    finally:
                        cursor.close()
                        conn.autocommit = True
            except pyodbc.Error as e:
                if is_retryable_db_exception(e):
                    raise SinkTransient(f"Transient staging write failure: {e}") from e
                raise

        return len(distinct)
