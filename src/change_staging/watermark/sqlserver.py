"""
SQL Server watermark store.

Expected table layout (created by the database project, not by this job):

    CREATE TABLE etl.ChangeTrackingWatermark (
        TableName   NVARCHAR(261) NOT NULL CONSTRAINT UQ_ChangeTrackingWatermark UNIQUE,
        KeyColumns  NVARCHAR(MAX) NULL,
        Version     BIGINT        NOT NULL,
        CreatedAt   DATETIME2     NOT NULL,
        CreatedBy   NVARCHAR(128) NOT NULL,
        UpdatedAt   DATETIME2     NULL,
        UpdatedBy   NVARCHAR(128) NULL
    )
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter

from change_staging.errors import WatermarkRegressed
from change_staging.models import TrackedTable, Watermark
from utils.db_pool import BaseConnectionPool
from utils.sql_safety import quote_qualified_name, validate_version
from utils.tracing import trace_operation

from .base import WatermarkStore, default_min_version, table_name_of

logger = logging.getLogger(__name__)


WATERMARK_OPERATIONS = Counter(
    "ct_watermark_operations_total",
    "Watermark store operations",
    ["operation"],  # seed, advance, reseed
)

_COLUMNS = "TableName, Version, KeyColumns, CreatedAt, CreatedBy, UpdatedAt, UpdatedBy"


@contextmanager
def transaction(conn: Any) -> Iterator[Any]:
    """
    Run the block in an explicit transaction on an autocommit connection.

    Commits on success, rolls back on any exception, and always restores
    autocommit before the connection goes back to the pool.
    """
    conn.autocommit = False
    cursor = conn.cursor()
    try:
        yield cursor
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        cursor.close()
        conn.autocommit = True


def _row_to_watermark(row: Any) -> Watermark:
    return Watermark(
        table_name=row[0],
        version=int(row[1]),
        key_columns=row[2],
        created_at=row[3],
        created_by=row[4],
        updated_at=row[5],
        updated_by=row[6],
    )


class SQLServerWatermarkStore(WatermarkStore):
    """Watermark store backed by one SQL Server table, locked per row."""

    def __init__(
        self,
        pool: BaseConnectionPool,
        table: str = "etl.ChangeTrackingWatermark",
        actor: str = "ct-staging",
    ):
        self.pool = pool
        self.table = quote_qualified_name(table)
        self.actor = actor

        self._seed_sql = (
            f"MERGE {self.table} WITH (HOLDLOCK) AS target "
            f"USING (SELECT ? AS TableName) AS source "
            f"ON target.TableName = source.TableName "
            f"WHEN NOT MATCHED THEN "
            f"INSERT (TableName, KeyColumns, Version, CreatedAt, CreatedBy) "
            f"VALUES (source.TableName, ?, ?, SYSUTCDATETIME(), ?);"
        )
        self._select_sql = f"SELECT {_COLUMNS} FROM {self.table} WHERE TableName = ?"
        self._lock_sql = (
            f"SELECT Version, KeyColumns FROM {self.table} WITH (UPDLOCK, ROWLOCK) "
            f"WHERE TableName = ?"
        )
        self._advance_sql = (
            f"UPDATE {self.table} SET Version = ?, KeyColumns = COALESCE(KeyColumns, ?), "
            f"UpdatedAt = SYSUTCDATETIME(), UpdatedBy = ? WHERE TableName = ?"
        )
        self._reseed_update_sql = (
            f"UPDATE {self.table} SET Version = ?, KeyColumns = ?, "
            f"UpdatedAt = SYSUTCDATETIME(), UpdatedBy = ? WHERE TableName = ?"
        )
        self._insert_sql = (
            f"INSERT INTO {self.table} (TableName, KeyColumns, Version, CreatedAt, CreatedBy) "
            f"VALUES (?, ?, ?, SYSUTCDATETIME(), ?)"
        )

    def seed_missing(
        self,
        tables: Iterable[TrackedTable],
        min_version_of: Callable[[TrackedTable], int] = default_min_version,
    ) -> list[str]:
        seeded = []
        with trace_operation("seed_watermarks", kind=trace.SpanKind.CLIENT):
            with self.pool.acquire() as conn:
                cursor = conn.cursor()
                try:
                    for table in tables:
                        version = min_version_of(table)
                        validate_version(version, "seed version")
                        cursor.execute(
                            self._seed_sql,
                            table.qualified_name,
                            table.key_signature,
                            version,
                            self.actor,
                        )
                        if cursor.rowcount == 1:
                            seeded.append(table.qualified_name)
                            WATERMARK_OPERATIONS.labels(operation="seed").inc()
                finally:
                    cursor.close()

        if seeded:
            logger.info(f"Seeded {len(seeded)} watermark(s): {', '.join(seeded)}")
        return seeded

    def read_entry(self, table: TrackedTable | str) -> Watermark | None:
        with self.pool.acquire() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(self._select_sql, table_name_of(table))
                row = cursor.fetchone()
            finally:
                cursor.close()
        return _row_to_watermark(row) if row is not None else None

    def advance(
        self,
        table: TrackedTable | str,
        new_version: int,
        key_columns: str | None = None,
    ) -> Watermark:
        name = table_name_of(table)
        validate_version(new_version, "new_version")

        with trace_operation(
            "advance_watermark", kind=trace.SpanKind.CLIENT, table=name, version=new_version
        ):
            with self.pool.acquire() as conn, transaction(conn) as cursor:
                cursor.execute(self._lock_sql, name)
                row = cursor.fetchone()
                if row is None:
                    raise KeyError(f"No watermark for {name}")

                current_version, recorded_keys = int(row[0]), row[1]
                if new_version < current_version:
                    raise WatermarkRegressed(name, current_version, new_version)

                cursor.execute(self._advance_sql, new_version, key_columns, self.actor, name)

        WATERMARK_OPERATIONS.labels(operation="advance").inc()
        return Watermark(
            table_name=name,
            version=new_version,
            key_columns=recorded_keys or key_columns,
            updated_at=datetime.now(UTC),
            updated_by=self.actor,
        )

    def reseed(self, table: TrackedTable, version: int) -> Watermark:
        name = table.qualified_name
        validate_version(version, "reseed version")

        with self.pool.acquire() as conn, transaction(conn) as cursor:
            cursor.execute(self._lock_sql, name)
            row = cursor.fetchone()
            if row is None:
                target = version
                cursor.execute(self._insert_sql, name, table.key_signature, target, self.actor)
            else:
                target = max(int(row[0]), version)
                cursor.execute(
                    self._reseed_update_sql, target, table.key_signature, self.actor, name
                )

        WATERMARK_OPERATIONS.labels(operation="reseed").inc()
        logger.info(f"Re-seeded watermark of {name} at version {target}")
        return Watermark(
            table_name=name,
            version=target,
            key_columns=table.key_signature,
            updated_at=datetime.now(UTC),
            updated_by=self.actor,
        )

    def list_all(self) -> list[Watermark]:
        with self.pool.acquire() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(f"SELECT {_COLUMNS} FROM {self.table} ORDER BY TableName")
                rows = cursor.fetchall()
            finally:
                cursor.close()
        return [_row_to_watermark(row) for row in rows]
