"""
Provider interface the catalog reader and change enumerator depend on.
"""

from collections.abc import Iterator
from dataclasses import dataclass

from change_staging.models import ChangeRow, TrackedTable


@dataclass(frozen=True)
class CatalogKeyColumnRow:
    """One (table, key column) row as returned by the metadata query."""

    schema_name: str
    table_name: str
    column_name: str
    key_ordinal: int
    min_valid_version: int


class ChangeTrackingProvider:
    """
    Base class for change tracking providers.

    Subclasses raise their driver's exceptions unchanged; the catalog reader
    and enumerator decide how to classify them.
    """

    def list_tracked_key_columns(self) -> list[CatalogKeyColumnRow]:
        """Every key column of every tracked table, ordered by table then ordinal."""
        raise NotImplementedError

    def current_version(self) -> int | None:
        """The engine's current change tracking version, None if tracking is off."""
        raise NotImplementedError

    def min_valid_version(self, table: TrackedTable) -> int | None:
        """Oldest version the engine can still enumerate changes from."""
        raise NotImplementedError

    def changes_since(
        self,
        table: TrackedTable,
        since_version: int,
        upto_version: int | None = None,
    ) -> Iterator[ChangeRow]:
        """
        Changed keys with change version greater than ``since_version``.

        ``upto_version`` is a push-down hint; providers may ignore it.
        """
        raise NotImplementedError
