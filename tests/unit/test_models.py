"""
Unit tests for the shared value types
"""

from datetime import UTC, datetime, timedelta

import pytest

from change_staging.models import (
    KeyColumn,
    RunResult,
    RunState,
    StagedChange,
    TableOutcome,
    TableStatus,
    TrackedTable,
)
from tests.fakes import make_table


class TestTrackedTable:
    """Test TrackedTable validation and naming"""

    def test_composite_key_signature(self):
        """Test key columns join in ordinal order"""
        table = make_table("sales.OrderLines", "OrderId", "LineNo")

        assert table.qualified_name == "sales.OrderLines"
        assert table.key_column_names == ("OrderId", "LineNo")
        assert table.key_signature == "OrderId,LineNo"

    def test_requires_key_columns(self):
        """Test a table without a primary key is rejected"""
        with pytest.raises(ValueError, match="no key columns"):
            TrackedTable("dbo", "Heap", ())

    def test_ordinals_must_be_contiguous(self):
        """Test key ordinals must run 1..N in order"""
        with pytest.raises(ValueError, match="1..N"):
            TrackedTable("dbo", "Orders", (KeyColumn("B", 2), KeyColumn("A", 1)))

    def test_staged_change_for_table(self):
        """Test staging rows carry the table's schema, name and key signature"""
        table = make_table("sales.OrderLines", "OrderId", "LineNo")

        row = StagedChange.for_table(table, "ab" * 32)

        assert (row.schema_name, row.table_name) == ("sales", "OrderLines")
        assert row.key_column_name == "OrderId,LineNo"
        assert row.created_at.tzinfo is not None


class TestRunResult:
    """Test RunResult aggregates"""

    def test_counts_and_serialization(self):
        """Test totals and to_dict"""
        started = datetime(2026, 1, 1, tzinfo=UTC)
        result = RunResult(
            run_id="r1",
            state=RunState.PARTIALLY_FAILED,
            cutover_version=150,
            completed_tables=[
                TableOutcome("dbo.Orders", TableStatus.STAGED, staged_rows=3,
                             previous_version=100, new_version=150),
                TableOutcome("dbo.Customers", TableStatus.SKIPPED,
                             previous_version=200, new_version=200),
            ],
            failed_tables=[
                TableOutcome("dbo.Legacy", TableStatus.FAILED, previous_version=10,
                             error_type="VersionExpired", error="expired"),
            ],
            started_at=started,
            finished_at=started + timedelta(seconds=2.5),
        )

        data = result.to_dict()

        assert result.succeeded_count == 2
        assert result.failed_count == 1
        assert [o.table for o in result.skipped_tables] == ["dbo.Customers"]
        assert result.staged_rows == 3
        assert data["state"] == "PartiallyFailed"
        assert data["duration_seconds"] == 2.5
        assert data["failed_tables"][0]["error_type"] == "VersionExpired"
        assert data["completed_tables"][0]["status"] == "staged"

    def test_unfinished_run_duration(self):
        """Test an unfinished run reports zero duration"""
        result = RunResult("r1", RunState.PROCESSING_TABLES, 150)

        assert result.duration_seconds == 0.0
        assert result.to_dict()["finished_at"] is None

    def test_outcome_succeeded(self):
        """Test staged and skipped outcomes count as success"""
        assert TableOutcome("t", TableStatus.SKIPPED).succeeded
        assert not TableOutcome("t", TableStatus.TIMEOUT).succeeded
