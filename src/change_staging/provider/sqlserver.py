"""
SQL Server change tracking provider.

Reads ``sys.change_tracking_tables`` for discovery and ``CHANGETABLE(CHANGES ...)``
for the change feed. Catalog names are bracket-quoted with ``]`` escaped;
versions are bound as parameters.
"""

import logging
from collections.abc import Iterator

from opentelemetry import trace

from change_staging.models import ChangeRow, TrackedTable
from utils.db_pool import BaseConnectionPool
from utils.sql_safety import quote_catalog_identifier, validate_version
from utils.tracing import trace_operation

from .base import CatalogKeyColumnRow, ChangeTrackingProvider

logger = logging.getLogger(__name__)


TRACKED_KEY_COLUMNS_QUERY = """
    SELECT
        s.name AS schema_name,
        t.name AS table_name,
        c.name AS column_name,
        ic.key_ordinal,
        CHANGE_TRACKING_MIN_VALID_VERSION(t.object_id) AS min_valid_version
    FROM sys.change_tracking_tables AS ctt
    INNER JOIN sys.tables AS t ON t.object_id = ctt.object_id
    INNER JOIN sys.schemas AS s ON s.schema_id = t.schema_id
    INNER JOIN sys.indexes AS i
        ON i.object_id = t.object_id AND i.is_primary_key = 1
    INNER JOIN sys.index_columns AS ic
        ON ic.object_id = i.object_id AND ic.index_id = i.index_id
    INNER JOIN sys.columns AS c
        ON c.object_id = ic.object_id AND c.column_id = ic.column_id
    WHERE ic.key_ordinal > 0
    ORDER BY s.name, t.name, ic.key_ordinal
"""

CURRENT_VERSION_QUERY = "SELECT CHANGE_TRACKING_CURRENT_VERSION()"

MIN_VALID_VERSION_QUERY = "SELECT CHANGE_TRACKING_MIN_VALID_VERSION(OBJECT_ID(?))"


def quoted_table_name(table: TrackedTable) -> str:
    return f"{quote_catalog_identifier(table.schema)}.{quote_catalog_identifier(table.name)}"


def build_changes_query(table: TrackedTable, bounded: bool) -> str:
    """
    ``CHANGETABLE`` query selecting the key columns and change version.

    The first parameter is the since-version; when ``bounded`` the second
    is the inclusive upper version.
    """
    key_list = ", ".join(
        f"CT.{quote_catalog_identifier(name)}" for name in table.key_column_names
    )
    source = quoted_table_name(table)
    query = (
        f"SELECT {key_list}, CT.SYS_CHANGE_VERSION "
        f"FROM CHANGETABLE(CHANGES {source}, ?) AS CT"
    )
    if bounded:
        query += " WHERE CT.SYS_CHANGE_VERSION <= ?"
    return query + " ORDER BY CT.SYS_CHANGE_VERSION"


class SQLServerChangeTrackingProvider(ChangeTrackingProvider):
    """Change tracking provider over a pooled pyodbc connection."""

    def __init__(self, pool: BaseConnectionPool, fetch_size: int = 5000):
        """
        Args:
            pool: Connection pool for the tracked database
            fetch_size: Rows fetched per round trip while streaming changes
        """
        self.pool = pool
        self.fetch_size = fetch_size

    def list_tracked_key_columns(self) -> list[CatalogKeyColumnRow]:
        with trace_operation("ct_list_tracked_key_columns", kind=trace.SpanKind.CLIENT):
            with self.pool.acquire() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(TRACKED_KEY_COLUMNS_QUERY)
                    rows = cursor.fetchall()
                finally:
                    cursor.close()

        return [
            CatalogKeyColumnRow(
                schema_name=row[0],
                table_name=row[1],
                column_name=row[2],
                key_ordinal=int(row[3]),
                min_valid_version=int(row[4]) if row[4] is not None else 0,
            )
            for row in rows
        ]

    def current_version(self) -> int | None:
        with trace_operation("ct_current_version", kind=trace.SpanKind.CLIENT):
            return self._scalar(CURRENT_VERSION_QUERY)

    def min_valid_version(self, table: TrackedTable) -> int | None:
        with trace_operation(
            "ct_min_valid_version", kind=trace.SpanKind.CLIENT, table=table.qualified_name
        ):
            return self._scalar(MIN_VALID_VERSION_QUERY, quoted_table_name(table))

    def changes_since(
        self,
        table: TrackedTable,
        since_version: int,
        upto_version: int | None = None,
    ) -> Iterator[ChangeRow]:
        validate_version(since_version, "since_version")
        params: list[int] = [since_version]
        if upto_version is not None:
            validate_version(upto_version, "upto_version")
            params.append(upto_version)

        query = build_changes_query(table, bounded=upto_version is not None)
        key_count = len(table.key_columns)

        with self.pool.acquire() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(query, *params)
                while True:
                    batch = cursor.fetchmany(self.fetch_size)
                    if not batch:
                        break
                    for row in batch:
                        yield ChangeRow(
                            key_values=tuple(row[:key_count]),
                            change_version=int(row[key_count]),
                        )
            finally:
                cursor.close()

    def _scalar(self, query: str, *params) -> int | None:
        with self.pool.acquire() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(query, *params)
                row = cursor.fetchone()
            finally:
                cursor.close()

        if row is None or row[0] is None:
            return None
        return int(row[0])
