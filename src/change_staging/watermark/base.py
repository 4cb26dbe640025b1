"""
Watermark store contract.
"""

from collections.abc import Callable, Iterable

from change_staging.models import TrackedTable, Watermark


def table_name_of(table: TrackedTable | str) -> str:
    """Identity used as the watermark key: ``schema.table``."""
    if isinstance(table, TrackedTable):
        return table.qualified_name
    return table


def default_min_version(table: TrackedTable) -> int:
    return table.min_valid_version


class WatermarkStore:
    """
    Base class for watermark stores.

    Invariants every implementation keeps:
    - seeding never overwrites an existing watermark
    - a watermark's version never decreases
    - watermarks are never deleted
    """

    def seed_missing(
        self,
        tables: Iterable[TrackedTable],
        min_version_of: Callable[[TrackedTable], int] = default_min_version,
    ) -> list[str]:
        """
        Insert a watermark for every table that has none yet.

        Args:
            tables: Discovered tables
            min_version_of: Version to seed a table at, normally the
                engine-reported minimum valid version at discovery

        Returns:
            Names of the tables that were seeded by this call
        """
        raise NotImplementedError

    def read_entry(self, table: TrackedTable | str) -> Watermark | None:
        raise NotImplementedError

    def read(self, table: TrackedTable | str) -> int:
        """Current version for the table, or 0 if it was never seeded."""
        entry = self.read_entry(table)
        return entry.version if entry is not None else 0

    def advance(
        self,
        table: TrackedTable | str,
        new_version: int,
        key_columns: str | None = None,
    ) -> Watermark:
        """
        Move the table's watermark to ``new_version``.

        ``key_columns`` fills in the key signature of legacy rows that were
        seeded without one; an existing signature is left as is.

        Raises:
            WatermarkRegressed: If ``new_version`` is below the current version
            KeyError: If the table has no watermark
        """
        raise NotImplementedError

    def reseed(self, table: TrackedTable, version: int) -> Watermark:
        """
        Accept the table's current key shape and move its watermark to
        ``max(current, version)``; seeds the table if it has no watermark.
        """
        raise NotImplementedError

    def list_all(self) -> list[Watermark]:
        raise NotImplementedError
