"""
Unit tests for run report formatting and export
"""

import csv
import json
from datetime import UTC, datetime, timedelta

from change_staging.models import RunResult, RunState, TableOutcome, TableStatus, Watermark
from change_staging.report import (
    export_run_csv,
    export_run_json,
    format_run_console,
    format_watermarks_console,
)

STARTED = datetime(2026, 3, 1, 2, 0, tzinfo=UTC)


def sample_result():
    return RunResult(
        run_id="abc123",
        state=RunState.PARTIALLY_FAILED,
        cutover_version=150,
        completed_tables=[
            TableOutcome("dbo.Customers", TableStatus.SKIPPED, 0, 200, 200),
            TableOutcome("dbo.Orders", TableStatus.STAGED, 3, 100, 150),
        ],
        failed_tables=[
            TableOutcome(
                "dbo.Legacy",
                TableStatus.FAILED,
                previous_version=10,
                new_version=10,
                error_type="VersionExpired",
                error="Watermark 10 of dbo.Legacy is older than the minimum valid version 120",
            ),
        ],
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=12.5),
    )


class TestRunResultSummary:
    """Test RunResult aggregates"""

    def test_counts(self):
        """Test succeeded, failed, skipped and staged totals"""
        result = sample_result()

        assert result.succeeded_count == 2
        assert result.failed_count == 1
        assert [o.table for o in result.skipped_tables] == ["dbo.Customers"]
        assert result.staged_rows == 3
        assert result.duration_seconds == 12.5


class TestFormatRunConsole:
    """Test format_run_console"""

    def test_header_and_totals(self):
        """Test the banner and summary lines"""
        output = format_run_console(sample_result())

        assert output.startswith("=" * 80)
        assert "CHANGE TRACKING STAGING RUN" in output
        assert "State: PartiallyFailed" in output
        assert "Cutover Version: 150" in output
        assert "Tables Succeeded: 2 (1 unchanged)" in output
        assert "Rows Staged: 3" in output

    def test_staged_and_failed_sections(self):
        """Test per-table lines for staged and failed tables"""
        output = format_run_console(sample_result())

        assert "dbo.Orders: 3 key(s), watermark 100 -> 150" in output
        assert "dbo.Legacy [failed] VersionExpired" in output
        assert "watermark left at 10" in output
        assert "dbo.Customers" not in output.split("STAGED:")[1]

    def test_no_sections_when_nothing_happened(self):
        """Test a quiet run has no STAGED or FAILED sections"""
        result = RunResult("r1", RunState.COMPLETED, 150, finished_at=datetime.now(UTC))

        output = format_run_console(result)

        assert "STAGED:" not in output
        assert "FAILED:" not in output


class TestExport:
    """Test JSON and CSV export"""

    def test_export_json(self, tmp_path):
        """Test the JSON report mirrors to_dict"""
        path = tmp_path / "run.json"

        export_run_json(sample_result(), str(path))

        data = json.loads(path.read_text())
        assert data["run_id"] == "abc123"
        assert data["state"] == "PartiallyFailed"
        assert data["failed_tables"][0]["error_type"] == "VersionExpired"
        assert data["duration_seconds"] == 12.5

    def test_export_csv(self, tmp_path):
        """Test one CSV line per table"""
        path = tmp_path / "run.csv"

        export_run_csv(sample_result(), str(path))

        with open(path, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "Table"
        assert [r[0] for r in rows[1:]] == ["dbo.Customers", "dbo.Orders", "dbo.Legacy"]
        assert rows[3][5] == "VersionExpired"


class TestFormatWatermarks:
    """Test format_watermarks_console"""

    def test_empty(self):
        """Test the empty message"""
        assert format_watermarks_console([]) == "No watermarks recorded"

    def test_table(self):
        """Test one aligned line per watermark"""
        output = format_watermarks_console([
            Watermark("dbo.Orders", 150, "OrderId", created_at=STARTED),
            Watermark("sales.OrderLines", 7, "OrderId,LineNo", created_at=STARTED,
                      updated_at=STARTED + timedelta(days=1)),
        ])

        lines = output.splitlines()
        assert lines[0].startswith("Table")
        assert "150" in lines[2]
        assert "2026-03-02T02:00:00+00:00" in lines[3]
        assert lines[3].endswith("OrderId,LineNo")
