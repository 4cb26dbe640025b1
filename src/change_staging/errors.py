"""
Error taxonomy for a staging run.

Run-level errors (``CatalogUnavailable``, ``WatermarkRegressed``) abort
``run_once``. Table-level errors are contained to their table task and
reported in ``RunResult.failed_tables``.
"""


class ChangeStagingError(Exception):
    """Base class for all staging errors."""

    def __init__(self, message: str, table: str | None = None):
        super().__init__(message)
        self.table = table


class CatalogUnavailable(ChangeStagingError):
    """The change tracking metadata could not be read. Fatal for the run."""


class KeyShapeChanged(CatalogUnavailable):
    """
    A table's primary key columns differ from the ones its watermark was
    recorded with. Fatal for that table only.
    """

    def __init__(self, table: str, recorded: str, discovered: str):
        super().__init__(
            f"Key columns of {table} changed from ({recorded}) to ({discovered}); "
            f"re-seed the table to accept the new key shape",
            table=table,
        )
        self.recorded = recorded
        self.discovered = discovered


class VersionExpired(ChangeStagingError):
    """
    The table's watermark is older than the engine's retention floor, so
    the change window has rolled off. Not retryable without a re-seed.
    """

    def __init__(self, table: str, since_version: int, min_valid_version: int):
        super().__init__(
            f"Watermark {since_version} of {table} is older than the minimum "
            f"valid version {min_valid_version}",
            table=table,
        )
        self.since_version = since_version
        self.min_valid_version = min_valid_version


class EnumeratorTransient(ChangeStagingError):
    """Transient failure reading a table's change feed."""


class SinkTransient(ChangeStagingError):
    """Transient failure writing to the staging table."""


class WatermarkRegressed(ChangeStagingError):
    """
    An advance would move a watermark backwards. Indicates corrupted
    cutover/watermark bookkeeping and always aborts the run.
    """

    def __init__(self, table: str, current_version: int, new_version: int):
        super().__init__(
            f"Refusing to move watermark of {table} back from "
            f"{current_version} to {new_version}",
            table=table,
        )
        self.current_version = current_version
        self.new_version = new_version


class TableTimeout(ChangeStagingError):
    """A table task ran past its per-table timeout."""


class RunCancelled(ChangeStagingError):
    """The run was cancelled before this table task finished."""
