"""
Unit tests for staging sinks

Tests verify:
- Per-write deduplication by fingerprint
- Reset semantics
- SQL Server batching, transactions and error classification (mocked)
"""

import pyodbc
import pytest

from change_staging.errors import SinkTransient
from change_staging.models import StagedChange
from change_staging.sink import InMemoryStagingSink, SQLServerStagingSink, distinct_by_fingerprint
from tests.fakes import make_table, mock_pool

ORDERS = make_table("dbo.Orders", "OrderId")


def staged(fingerprint, table=ORDERS):
    return StagedChange.for_table(table, fingerprint)


class TestDistinctByFingerprint:
    """Test distinct_by_fingerprint"""

    def test_keeps_first_occurrence_in_order(self):
        """Test duplicates are dropped and order is preserved"""
        rows = [staged("b"), staged("a"), staged("b"), staged("c")]

        assert [r.key_fingerprint for r in distinct_by_fingerprint(rows)] == ["b", "a", "c"]

    def test_accepts_generators(self):
        """Test any iterable is accepted"""
        assert len(distinct_by_fingerprint(staged(f) for f in "aab")) == 2


class TestInMemoryStagingSink:
    """Test InMemoryStagingSink"""

    def test_write_dedups_within_write(self):
        """Test one write stores each fingerprint once"""
        sink = InMemoryStagingSink()

        written = sink.write([staged("a"), staged("a"), staged("b")])

        assert written == 2
        assert [r.key_fingerprint for r in sink.rows] == ["a", "b"]

    def test_rows_are_tagged_with_table(self):
        """Test staged rows carry the table identity and key columns"""
        sink = InMemoryStagingSink()
        lines = make_table("sales.OrderLines", "OrderId", "LineNo")

        sink.write([staged("a"), staged("b", lines)])

        row = sink.rows_for("sales.OrderLines")[0]
        assert (row.schema_name, row.table_name, row.key_column_name) == (
            "sales", "OrderLines", "OrderId,LineNo"
        )
        assert len(sink.rows_for("dbo.Orders")) == 1

    def test_reset_clears_all_tables(self):
        """Test reset empties the whole staging set"""
        sink = InMemoryStagingSink()
        sink.write([staged("a")])

        sink.reset()

        assert sink.rows == []
        assert sink.reset_count == 1


class TestSQLServerStagingSink:
    """Test SQLServerStagingSink against a mocked connection"""

    def test_reset_truncates(self):
        """Test reset truncates the quoted staging table"""
        pool, _, cursor = mock_pool()

        SQLServerStagingSink(pool, table="etl.Staging").reset()

        cursor.execute.assert_called_once_with("TRUNCATE TABLE [etl].[Staging]")

    def test_write_batches_in_one_transaction(self):
        """Test rows are inserted in batches and committed once"""
        pool, conn, cursor = mock_pool()
        sink = SQLServerStagingSink(pool, batch_size=2)

        written = sink.write([staged("a"), staged("b"), staged("a"), staged("c")])

        assert written == 3
        assert cursor.fast_executemany is True
        assert cursor.executemany.call_count == 2
        sql, first_batch = cursor.executemany.call_args_list[0].args
        assert sql.startswith("INSERT INTO [etl].[ChangeTrackingStaging]")
        assert [p[3] for p in first_batch] == ["a", "b"]
        assert first_batch[0][:3] == ("dbo", "Orders", "OrderId")
        conn.commit.assert_called_once()
        assert conn.autocommit is True

    def test_empty_write_skips_database(self):
        """Test writing nothing does not touch the pool"""
        pool, _, _ = mock_pool()

        assert SQLServerStagingSink(pool).write([]) == 0
        pool.acquire.assert_not_called()

    def test_transient_error_becomes_sink_transient(self):
        """Test a deadlock is rolled back and raised as SinkTransient"""
        pool, conn, cursor = mock_pool()
        cursor.executemany.side_effect = pyodbc.Error("40001", "Transaction was deadlocked")

        with pytest.raises(SinkTransient):
            SQLServerStagingSink(pool).write([staged("a")])

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        assert conn.autocommit is True

    def test_permanent_error_propagates(self):
        """Test a non-transient driver error is raised unchanged"""
        pool, conn, cursor = mock_pool()
        cursor.executemany.side_effect = pyodbc.Error("42S02", "Invalid object name")

        with pytest.raises(pyodbc.Error):
            SQLServerStagingSink(pool).write([staged("a")])

        conn.rollback.assert_called_once()
