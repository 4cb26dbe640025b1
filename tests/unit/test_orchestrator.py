"""
Unit tests for the run orchestrator

Tests verify:
- Run state sequence and cutover handling
- Per-table skip, stage and advance behaviour
- Partial failure isolation and error classification
- In-task retries of transient enumerator/sink failures
- Timeout and cancellation never advancing a watermark
- Key shape changes and re-seeding

All tests run against the in-memory provider, store and sink.
"""

import threading
import time
from unittest.mock import patch

import pytest

from change_staging.catalog import CatalogReader
from change_staging.enumerator import ChangeEnumerator, fingerprint_key
from change_staging.errors import (
    CatalogUnavailable,
    SinkTransient,
    WatermarkRegressed,
)
from change_staging.models import RunState, TableStatus, Watermark
from change_staging.orchestrator import RunOrchestrator
from change_staging.sink import InMemoryStagingSink
from change_staging.watermark import InMemoryWatermarkStore
from tests.fakes import FakeChangeTrackingProvider, make_table


def build(provider, watermarks=None, sink=None, **kwargs):
    options = {
        "max_workers": 4,
        "timeout_per_table": 60,
        "max_retries": 2,
        "retry_base_delay": 0.01,
        "sleep": lambda seconds: None,
    }
    options.update(kwargs)
    return RunOrchestrator(
        catalog=CatalogReader(provider),
        watermarks=watermarks or InMemoryWatermarkStore(actor="test"),
        enumerator=ChangeEnumerator(provider),
        sink=sink or InMemoryStagingSink(),
        **options,
    )


@pytest.fixture
def orders(provider):
    """dbo.Orders seeded at 100 with keys 1, 2, 3 changed before cutover 150."""
    provider.add_table(make_table("dbo.Orders", "OrderId"), min_valid_version=100)
    provider.add_change("dbo.Orders", (1,), 110)
    provider.add_change("dbo.Orders", (2,), 120)
    provider.add_change("dbo.Orders", (3,), 140)
    return provider.tables["dbo.Orders"]


class TestRunOnce:
    """Happy path of one staging run"""

    def test_stages_changed_keys_and_advances_watermark(self, orchestrator, orders, watermarks, sink):
        """Test Orders seeded at 100 stages keys 1-3 and moves to cutover 150"""
        result = orchestrator.run_once()

        assert result.state is RunState.COMPLETED
        assert result.cutover_version == 150
        assert result.succeeded_count == 1
        assert result.failed_count == 0

        staged = sink.rows_for("dbo.Orders")
        assert len(staged) == 3
        assert {row.key_fingerprint for row in staged} == {
            fingerprint_key((1,)),
            fingerprint_key((2,)),
            fingerprint_key((3,)),
        }
        assert all(row.key_column_name == "OrderId" for row in staged)
        assert watermarks.read(orders) == 150

        outcome = result.completed_tables[0]
        assert outcome.status is TableStatus.STAGED
        assert outcome.staged_rows == 3
        assert outcome.previous_version == 100
        assert outcome.new_version == 150

    def test_final_state_is_recorded_on_orchestrator(self, orchestrator, orders):
        """Test orchestrator state ends in the run's terminal state"""
        orchestrator.run_once()

        assert orchestrator.state is RunState.COMPLETED

    def test_key_changed_twice_is_staged_once(self, orchestrator, orders, provider, sink):
        """Test duplicate keys in the window collapse to one staged row"""
        provider.add_change("dbo.Orders", (1,), 145)

        result = orchestrator.run_once()

        assert result.completed_tables[0].staged_rows == 3
        assert len(sink.rows_for("dbo.Orders")) == 3

    def test_changes_after_cutover_are_left_for_next_run(self, orchestrator, orders, provider, sink, watermarks):
        """Test changes newer than the cutover are excluded then picked up later"""
        provider.add_change("dbo.Orders", (4,), 160)

        orchestrator.run_once()
        assert fingerprint_key((4,)) not in {r.key_fingerprint for r in sink.rows}

        provider.version = 170
        result = orchestrator.run_once()

        assert [r.key_fingerprint for r in sink.rows] == [fingerprint_key((4,))]
        assert result.completed_tables[0].previous_version == 150
        assert watermarks.read(orders) == 170

    def test_second_run_without_changes_stages_nothing(self, orchestrator, orders, sink, watermarks):
        """Test running twice with no new changes yields zero staged rows"""
        orchestrator.run_once()
        result = orchestrator.run_once()

        assert result.state is RunState.COMPLETED
        assert result.staged_rows == 0
        assert sink.rows == []
        assert watermarks.read(orders) == 150
        assert result.skipped_tables[0].table == "dbo.Orders"

    def test_staging_is_reset_once_per_run(self, orchestrator, orders, provider, sink):
        """Test the staging set is cleared before each run"""
        provider.add_table(make_table("dbo.Customers", "CustomerId"), min_valid_version=100)
        provider.add_change("dbo.Customers", (7,), 130)

        orchestrator.run_once()
        assert sink.reset_count == 1
        assert len(sink.rows) == 4

        orchestrator.run_once()
        assert sink.reset_count == 2
        assert sink.rows == []

    def test_composite_key_uses_ordinal_order(self, orchestrator, provider, sink):
        """Test composite keys are fingerprinted in key ordinal order"""
        lines = make_table("dbo.OrderLines", "OrderId", "LineNo")
        provider.add_table(lines, min_valid_version=0)
        provider.add_change("dbo.OrderLines", (10, 1), 50)
        provider.add_change("dbo.OrderLines", (1, 10), 60)

        orchestrator.run_once()

        staged = sink.rows_for("dbo.OrderLines")
        assert len(staged) == 2
        assert staged[0].key_column_name == "OrderId,LineNo"
        assert {r.key_fingerprint for r in staged} == {
            fingerprint_key((10, 1)),
            fingerprint_key((1, 10)),
        }

    def test_no_tracked_tables(self, orchestrator, sink):
        """Test a database with no tracked tables completes empty"""
        result = orchestrator.run_once()

        assert result.state is RunState.COMPLETED
        assert result.completed_tables == []
        assert sink.reset_count == 1

    def test_include_tables_restricts_processing(self, orchestrator, orders, provider, sink, watermarks):
        """Test include_tables limits processing but still seeds everything"""
        customers = make_table("dbo.Customers", "CustomerId")
        provider.add_table(customers, min_valid_version=90)
        provider.add_change("dbo.Customers", (7,), 130)

        result = orchestrator.run_once(include_tables=["DBO.orders"])

        assert [o.table for o in result.completed_tables] == ["dbo.Orders"]
        assert sink.rows_for("dbo.Customers") == []
        assert watermarks.read(customers) == 90

    def test_run_result_to_dict(self, orchestrator, orders):
        """Test run result serializes to plain values"""
        data = orchestrator.run_once().to_dict()

        assert data["state"] == "Completed"
        assert data["cutover_version"] == 150
        assert data["succeeded"] == 1
        assert data["staged_rows"] == 3
        assert data["completed_tables"][0]["status"] == "staged"


class TestSeeding:
    """Watermark seeding during a run"""

    def test_new_table_seeded_at_min_valid_version_not_cutover(self, orchestrator, provider, watermarks):
        """Test seeding uses the discovery-time minimum valid version"""
        table = make_table("dbo.Products", "ProductId")
        provider.add_table(table, min_valid_version=42)
        provider.add_change("dbo.Products", (5,), 43)

        result = orchestrator.run_once()

        assert result.completed_tables[0].previous_version == 42
        assert watermarks.read(table) == 150

    def test_existing_watermark_is_not_reseeded(self, provider, orders):
        """Test seeding twice never moves an existing watermark"""
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.Orders", 130, "OrderId")])
        sink = InMemoryStagingSink()

        result = build(provider, store, sink).run_once()

        assert result.completed_tables[0].previous_version == 130
        assert [r.key_fingerprint for r in sink.rows] == [fingerprint_key((3,))]


class TestSkip:
    """Tables whose watermark already reached the cutover"""

    def test_watermark_ahead_of_cutover_is_skipped(self, provider):
        """Test Customers at 200 with cutover 150 is a no-op"""
        customers = make_table("dbo.Customers", "CustomerId")
        provider.add_table(customers, min_valid_version=100)
        provider.add_change("dbo.Customers", (1,), 180)
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.Customers", 200, "CustomerId")])
        sink = InMemoryStagingSink()

        with patch.object(store, "advance", wraps=store.advance) as advance:
            result = build(provider, store, sink).run_once()

        assert result.state is RunState.COMPLETED
        outcome = result.completed_tables[0]
        assert outcome.status is TableStatus.SKIPPED
        assert outcome.previous_version == 200
        assert outcome.new_version == 200
        advance.assert_not_called()
        assert store.read(customers) == 200
        assert provider.changes_calls == []
        assert sink.rows == []

    def test_watermark_equal_to_cutover_is_skipped(self, provider):
        """Test a watermark already at the cutover enumerates nothing"""
        provider.add_table(make_table("dbo.Orders", "OrderId"))
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.Orders", 150, "OrderId")])

        result = build(provider, store).run_once()

        assert result.completed_tables[0].status is TableStatus.SKIPPED
        assert provider.changes_calls == []


class TestPartialFailure:
    """Failures contained to one table"""

    def test_version_expired_fails_only_that_table(self, provider, orders):
        """Test Legacy with an expired watermark fails while Orders completes"""
        legacy = make_table("dbo.Legacy", "LegacyId")
        provider.add_table(legacy, min_valid_version=120)
        provider.add_change("dbo.Legacy", (1,), 130)
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.Legacy", 10, "LegacyId")])
        sink = InMemoryStagingSink()

        result = build(provider, store, sink).run_once()

        assert result.state is RunState.PARTIALLY_FAILED
        assert [o.table for o in result.completed_tables] == ["dbo.Orders"]
        failed = result.failed_tables[0]
        assert failed.table == "dbo.Legacy"
        assert failed.status is TableStatus.FAILED
        assert failed.error_type == "VersionExpired"
        assert store.read(legacy) == 10
        assert store.read(orders) == 150
        assert sink.rows_for("dbo.Legacy") == []
        assert len(sink.rows_for("dbo.Orders")) == 3

    def test_enumerator_failure_does_not_block_other_tables(self, orchestrator, orders, provider, watermarks):
        """Test table B's enumerator failure leaves table A's advance intact"""
        broken = make_table("dbo.Broken", "Id")
        provider.add_table(broken, min_valid_version=100)
        provider.fail_changes["dbo.Broken"] = RuntimeError("invalid object name")

        result = orchestrator.run_once()

        assert result.state is RunState.PARTIALLY_FAILED
        assert result.failed_tables[0].error_type == "RuntimeError"
        assert "invalid object name" in result.failed_tables[0].error
        assert watermarks.read(broken) == 100
        assert watermarks.read(orders) == 150

    def test_non_transient_error_is_not_retried(self, orchestrator, orders, provider):
        """Test a permanent failure is attempted exactly once"""
        provider.fail_changes["dbo.Orders"] = RuntimeError("permission denied")

        orchestrator.run_once()

        assert len(provider.changes_calls) == 1

    def test_failed_window_is_retried_in_full_next_run(self, orchestrator, orders, provider, sink):
        """Test a failed table's window is staged on the following run"""
        provider.fail_changes["dbo.Orders"] = [RuntimeError("permission denied")]

        first = orchestrator.run_once()
        second = orchestrator.run_once()

        assert first.state is RunState.PARTIALLY_FAILED
        assert second.state is RunState.COMPLETED
        assert second.completed_tables[0].previous_version == 100
        assert len(sink.rows_for("dbo.Orders")) == 3


class TestTransientRetry:
    """In-task retries of transient failures"""

    def test_transient_enumerator_failure_is_retried(self, orchestrator, orders, provider, watermarks):
        """Test a connection drop is retried and the table still stages"""
        provider.fail_changes["dbo.Orders"] = [ConnectionError("Communication link failure")]

        result = orchestrator.run_once()

        assert result.state is RunState.COMPLETED
        assert result.completed_tables[0].staged_rows == 3
        assert len(provider.changes_calls) == 2
        assert watermarks.read(orders) == 150

    def test_persistent_transient_failure_fails_table(self, orchestrator, orders, provider, watermarks):
        """Test retries are bounded and then reported as EnumeratorTransient"""
        provider.fail_changes["dbo.Orders"] = ConnectionError("Communication link failure")

        result = orchestrator.run_once()

        assert result.failed_tables[0].error_type == "EnumeratorTransient"
        # initial attempt + max_retries
        assert len(provider.changes_calls) == 3
        assert watermarks.read(orders) == 100

    def test_transient_sink_failure_is_retried(self, provider, orders):
        """Test a transient staging write failure is retried"""

        class FlakySink(InMemoryStagingSink):
            def __init__(self):
                super().__init__()
                self.write_calls = 0

            def write(self, rows):
                self.write_calls += 1
                if self.write_calls == 1:
                    raise SinkTransient("deadlock victim")
                return super().write(rows)

        sink = FlakySink()
        store = InMemoryWatermarkStore()

        result = build(provider, store, sink).run_once()

        assert result.state is RunState.COMPLETED
        assert sink.write_calls == 2
        assert len(sink.rows) == 3
        assert store.read(orders) == 150

    def test_sink_failure_leaves_watermark(self, provider, orders):
        """Test a failed staging write never advances the watermark"""

        class BrokenSink(InMemoryStagingSink):
            def write(self, rows):
                raise SinkTransient("deadlock victim")

        store = InMemoryWatermarkStore()

        result = build(provider, store, BrokenSink()).run_once()

        assert result.failed_tables[0].error_type == "SinkTransient"
        assert store.read(orders) == 100


class TestTimeoutAndCancel:
    """Cooperative timeout and cancellation"""

    def test_timeout_does_not_advance_watermark(self, orders):
        """Test a table running past its timeout is failed without advance"""

        class SlowProvider(FakeChangeTrackingProvider):
            def changes_since(self, table, since_version, upto_version=None):
                time.sleep(0.2)
                return super().changes_since(table, since_version, upto_version)

        provider = SlowProvider(version=150)
        provider.add_table(orders, min_valid_version=100)
        provider.add_change("dbo.Orders", (1,), 110)
        store = InMemoryWatermarkStore()
        sink = InMemoryStagingSink()

        result = build(provider, store, sink, timeout_per_table=0.05).run_once()

        assert result.state is RunState.PARTIALLY_FAILED
        assert result.failed_tables[0].status is TableStatus.TIMEOUT
        assert result.failed_tables[0].error_type == "TableTimeout"
        assert store.read(orders) == 100
        assert sink.rows == []

    def test_provider_blocked_past_timeout_is_abandoned(self, orders):
        """Test a driver call that never returns does not hang the run"""
        release = threading.Event()

        class BlockingProvider(FakeChangeTrackingProvider):
            def changes_since(self, table, since_version, upto_version=None):
                release.wait(5)
                return super().changes_since(table, since_version, upto_version)

        provider = BlockingProvider(version=150)
        provider.add_table(orders, min_valid_version=100)
        provider.add_change("dbo.Orders", (1,), 110)
        store = InMemoryWatermarkStore()
        sink = InMemoryStagingSink()
        orchestrator = build(provider, store, sink, timeout_per_table=0.2, timeout_grace=0.1)

        started = time.monotonic()
        try:
            result = orchestrator.run_once()
        finally:
            release.set()

        assert time.monotonic() - started < 1.5
        assert result.state is RunState.PARTIALLY_FAILED
        assert result.failed_tables[0].status is TableStatus.TIMEOUT
        assert result.failed_tables[0].previous_version == 100
        assert result.failed_tables[0].new_version == 100
        assert store.read(orders) == 100
        assert sink.rows == []

    def test_query_cancelled_after_deadline_reports_timeout(self, orders):
        """Test a driver timeout error past the deadline is a timeout, not a failure"""

        class CancelledQueryProvider(FakeChangeTrackingProvider):
            def changes_since(self, table, since_version, upto_version=None):
                time.sleep(0.2)
                raise Exception("HYT00", "[HYT00] Query timeout expired")

        provider = CancelledQueryProvider(version=150)
        provider.add_table(orders, min_valid_version=100)
        store = InMemoryWatermarkStore()

        result = build(
            provider, store, timeout_per_table=0.1, timeout_grace=5, max_retries=0
        ).run_once()

        assert result.failed_tables[0].status is TableStatus.TIMEOUT
        assert result.failed_tables[0].error_type == "TableTimeout"
        assert store.read(orders) == 100

    def test_cancel_stops_before_advance_and_skips_pending(self):
        """Test cancellation mid-table leaves all watermarks in place"""
        holder = {}

        class CancellingProvider(FakeChangeTrackingProvider):
            def changes_since(self, table, since_version, upto_version=None):
                holder["orchestrator"].cancel()
                return super().changes_since(table, since_version, upto_version)

        provider = CancellingProvider(version=150)
        first = make_table("dbo.A", "Id")
        second = make_table("dbo.B", "Id")
        provider.add_table(first, min_valid_version=100)
        provider.add_table(second, min_valid_version=100)
        provider.add_change("dbo.A", (1,), 110)
        provider.add_change("dbo.B", (1,), 110)
        store = InMemoryWatermarkStore()

        orchestrator = build(provider, store, max_workers=1)
        holder["orchestrator"] = orchestrator
        result = orchestrator.run_once()

        assert result.state is RunState.PARTIALLY_FAILED
        assert {o.status for o in result.failed_tables} == {TableStatus.CANCELLED}
        assert len(result.failed_tables) == 2
        assert store.read(first) == 100
        assert store.read(second) == 100

    def test_next_run_clears_cancellation(self, orchestrator, orders):
        """Test a cancel before run_once does not affect the run"""
        orchestrator.cancel()

        result = orchestrator.run_once()

        assert result.state is RunState.COMPLETED


class TestFatalErrors:
    """Run-level failures"""

    def test_catalog_failure_aborts_before_reset(self, orchestrator, orders, provider, sink):
        """Test CatalogUnavailable aborts the run before staging is touched"""
        provider.fail_catalog = RuntimeError("login failed")

        with pytest.raises(CatalogUnavailable):
            orchestrator.run_once()

        assert sink.reset_count == 0

    def test_tracking_disabled_aborts(self, orchestrator, provider, sink):
        """Test a missing current version aborts the run"""
        provider.version = None

        with pytest.raises(CatalogUnavailable, match="not enabled"):
            orchestrator.run_once()

        assert sink.reset_count == 0

    def test_watermark_regression_aborts_run(self, orchestrator, orders, watermarks):
        """Test WatermarkRegressed always escapes run_once"""
        with patch.object(
            watermarks,
            "advance",
            side_effect=WatermarkRegressed("dbo.Orders", 200, 150),
        ):
            with pytest.raises(WatermarkRegressed):
                orchestrator.run_once()

    def test_reset_failure_aborts_run(self, provider, orders):
        """Test a staging reset failure is fatal"""

        class BrokenResetSink(InMemoryStagingSink):
            def reset(self):
                raise RuntimeError("cannot truncate")

        store = InMemoryWatermarkStore()

        with pytest.raises(RuntimeError, match="cannot truncate"):
            build(provider, store, BrokenResetSink()).run_once()

        assert store.read(orders) == 100

    def test_orchestrator_usable_after_abort(self, orchestrator, orders, provider):
        """Test the run lock is released after a fatal error"""
        provider.fail_catalog = RuntimeError("login failed")
        with pytest.raises(CatalogUnavailable):
            orchestrator.run_once()

        provider.fail_catalog = None
        assert orchestrator.run_once().state is RunState.COMPLETED


class TestKeyShape:
    """Key column changes between runs"""

    def test_changed_key_shape_fails_table(self, provider):
        """Test a new key column fails the table instead of mixing fingerprints"""
        lines = make_table("dbo.OrderLines", "OrderId", "LineNo")
        provider.add_table(lines, min_valid_version=100)
        provider.add_change("dbo.OrderLines", (1, 1), 110)
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.OrderLines", 100, "OrderId")])

        result = build(provider, store).run_once()

        failed = result.failed_tables[0]
        assert failed.error_type == "KeyShapeChanged"
        assert "OrderId,LineNo" in failed.error
        assert store.read(lines) == 100
        assert provider.changes_calls == []

    def test_legacy_watermark_adopts_key_shape(self, provider, orders):
        """Test a watermark without recorded key columns records them on advance"""
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.Orders", 100)])

        result = build(provider, store).run_once()

        assert result.state is RunState.COMPLETED
        assert store.read_entry(orders).key_columns == "OrderId"


class TestReseed:
    """Re-seeding a table's watermark"""

    def test_reseed_after_version_expired(self, provider):
        """Test re-seeding moves past the retention floor so the next run succeeds"""
        legacy = make_table("dbo.Legacy", "LegacyId")
        provider.add_table(legacy, min_valid_version=120)
        provider.add_change("dbo.Legacy", (1,), 130)
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.Legacy", 10, "LegacyId")])
        orchestrator = build(provider, store)

        assert orchestrator.run_once().failed_count == 1

        watermark = orchestrator.reseed("dbo.legacy")

        assert watermark.version == 120
        result = orchestrator.run_once()
        assert result.state is RunState.COMPLETED
        assert store.read(legacy) == 150

    def test_reseed_accepts_new_key_shape(self, provider):
        """Test re-seeding records the current key columns"""
        lines = make_table("dbo.OrderLines", "OrderId", "LineNo")
        provider.add_table(lines, min_valid_version=50)
        store = InMemoryWatermarkStore(initial=[Watermark("dbo.OrderLines", 100, "OrderId")])

        watermark = build(provider, store).reseed("dbo.OrderLines")

        assert watermark.version == 100
        assert watermark.key_columns == "OrderId,LineNo"

    def test_reseed_unknown_table(self, orchestrator, orders):
        """Test re-seeding a table outside change tracking fails"""
        with pytest.raises(CatalogUnavailable, match="not under change tracking"):
            orchestrator.reseed("dbo.Missing")
