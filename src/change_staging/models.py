"""
Value types shared by the catalog, watermark store, enumerator and sink.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

KEY_COLUMN_SEPARATOR = ","


@dataclass(frozen=True)
class KeyColumn:
    """One primary-key column and its 1-based key ordinal."""

    name: str
    ordinal: int


@dataclass(frozen=True)
class TrackedTable:
    """
    A table enrolled in change tracking.

    ``key_columns`` is always in ordinal order; that order defines how
    composite key values are concatenated before hashing.
    ``min_valid_version`` is the engine's retention floor at discovery time.
    """

    schema: str
    name: str
    key_columns: tuple[KeyColumn, ...]
    min_valid_version: int = 0

    def __post_init__(self):
        if not self.key_columns:
            raise ValueError(f"{self.schema}.{self.name} has no key columns")

        ordinals = [column.ordinal for column in self.key_columns]
        if ordinals != list(range(1, len(ordinals) + 1)):
            raise ValueError(
                f"{self.schema}.{self.name} key ordinals must be 1..N in order, "
                f"got {ordinals}"
            )

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def key_column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.key_columns)

    @property
    def key_column_name(self) -> str:
        """Key column names joined in ordinal order, e.g. ``OrderId,LineNo``."""
        return KEY_COLUMN_SEPARATOR.join(self.key_column_names)

    # The key shape persisted alongside the watermark
    key_signature = key_column_name

    def __str__(self) -> str:
        return self.qualified_name


@dataclass(frozen=True)
class Watermark:
    """Last change tracking version fully staged for one table."""

    table_name: str
    version: int
    key_columns: str | None = None
    created_at: datetime | None = None
    created_by: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None


@dataclass(frozen=True)
class ChangeRow:
    """One row of a table's change feed: key values in ordinal order."""

    key_values: tuple[Any, ...]
    change_version: int


@dataclass(frozen=True)
class KeyFingerprint:
    fingerprint: str
    change_version: int


@dataclass(frozen=True)
class StagedChange:
    """One row of the staging table."""

    schema_name: str
    table_name: str
    key_column_name: str
    key_fingerprint: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_table(cls, table: TrackedTable, fingerprint: str) -> "StagedChange":
        return cls(
            schema_name=table.schema,
            table_name=table.name,
            key_column_name=table.key_column_name,
            key_fingerprint=fingerprint,
        )


class RunState(str, Enum):
    IDLE = "Idle"
    CUTOVER_ESTABLISHED = "CutoverEstablished"
    SEEDING = "Seeding"
    STAGING_RESET = "StagingReset"
    PROCESSING_TABLES = "ProcessingTables"
    COMPLETED = "Completed"
    PARTIALLY_FAILED = "PartiallyFailed"


class TableStatus(str, Enum):
    STAGED = "staged"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class TableOutcome:
    """What happened to one table during a run."""

    table: str
    status: TableStatus
    staged_rows: int = 0
    previous_version: int | None = None
    new_version: int | None = None
    error_type: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (TableStatus.STAGED, TableStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "status": self.status.value,
            "staged_rows": self.staged_rows,
            "previous_version": self.previous_version,
            "new_version": self.new_version,
            "error_type": self.error_type,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class RunResult:
    """
    Outcome of one ``run_once``.

    ``completed_tables`` holds every table that succeeded, including the
    ones skipped because their watermark had already reached the cutover.
    """

    run_id: str
    state: RunState
    cutover_version: int
    completed_tables: list[TableOutcome] = field(default_factory=list)
    failed_tables: list[TableOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def succeeded_count(self) -> int:
        return len(self.completed_tables)

    @property
    def failed_count(self) -> int:
        return len(self.failed_tables)

    @property
    def skipped_tables(self) -> list[TableOutcome]:
        return [o for o in self.completed_tables if o.status is TableStatus.SKIPPED]

    @property
    def staged_rows(self) -> int:
        return sum(o.staged_rows for o in self.completed_tables)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "cutover_version": self.cutover_version,
            "succeeded": self.succeeded_count,
            "failed": self.failed_count,
            "skipped": len(self.skipped_tables),
            "staged_rows": self.staged_rows,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "completed_tables": [o.to_dict() for o in self.completed_tables],
            "failed_tables": [o.to_dict() for o in self.failed_tables],
        }
