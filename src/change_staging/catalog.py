"""
Metadata catalog reader.

Discovers which tables are under change tracking and the shape of their
primary keys. Discovery is all-or-nothing: a table silently missing from
the result would silently stop being staged, so any failure is reported as
``CatalogUnavailable``.
"""

import logging
from itertools import groupby

from prometheus_client import Gauge

from utils.tracing import add_span_attributes, trace_operation

from .errors import CatalogUnavailable
from .models import KeyColumn, TrackedTable
from .provider import CatalogKeyColumnRow, ChangeTrackingProvider

logger = logging.getLogger(__name__)


TRACKED_TABLES = Gauge(
    "ct_tracked_tables",
    "Tables enrolled in change tracking at the last discovery",
)


def group_key_columns(rows: list[CatalogKeyColumnRow]) -> list[TrackedTable]:
    """
    Fold per-column catalog rows into one TrackedTable per table.

    Rows need not arrive sorted; key columns end up in ordinal order and
    tables in ``schema.table`` order.

    Raises:
        ValueError: If a table's key ordinals are not a dense 1..N sequence
    """
    def table_key(row: CatalogKeyColumnRow) -> tuple[str, str]:
        return row.schema_name, row.table_name

    tables = []
    for (schema, name), group in groupby(sorted(rows, key=table_key), key=table_key):
        columns = sorted(group, key=lambda row: row.key_ordinal)
        tables.append(
            TrackedTable(
                schema=schema,
                name=name,
                key_columns=tuple(
                    KeyColumn(name=row.column_name, ordinal=row.key_ordinal)
                    for row in columns
                ),
                min_valid_version=columns[0].min_valid_version,
            )
        )
    return tables


class CatalogReader:
    """Reads tracked tables and the current version from a provider."""

    def __init__(self, provider: ChangeTrackingProvider):
        self.provider = provider

    def discover_tracked_tables(self) -> list[TrackedTable]:
        """
        Every table currently enrolled in change tracking.

        Raises:
            CatalogUnavailable: If the metadata cannot be read or is malformed
        """
        with trace_operation("discover_tracked_tables"):
            try:
                rows = self.provider.list_tracked_key_columns()
            except Exception as e:
                logger.error(f"Change tracking catalog unavailable: {e}")
                raise CatalogUnavailable(f"Failed to read change tracking catalog: {e}") from e

            try:
                tables = group_key_columns(rows)
            except ValueError as e:
                raise CatalogUnavailable(f"Malformed change tracking catalog: {e}") from e

            TRACKED_TABLES.set(len(tables))
            add_span_attributes(table_count=len(tables))
            logger.info(f"Discovered {len(tables)} change-tracked table(s)")
            return tables

    def current_version(self) -> int:
        """
        The engine's current change tracking version.

        Raises:
            CatalogUnavailable: If the version cannot be read or change
                tracking is disabled for the database
        """
        try:
            version = self.provider.current_version()
        except Exception as e:
            raise CatalogUnavailable(f"Failed to read current change tracking version: {e}") from e

        if version is None:
            raise CatalogUnavailable("Change tracking is not enabled for this database")
        return version
