"""
Run report formatting and export.
"""

import csv
import json
from typing import Any

from .models import RunResult, Watermark


def export_run_json(result: RunResult, output_path: str) -> None:
    with open(output_path, "w") as f:
        json.dump(result.to_dict(), f, indent=2)


def export_run_csv(result: RunResult, output_path: str) -> None:
    """One line per table: outcome, versions and error."""
    with open(output_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow([
            "Table",
            "Status",
            "Staged Rows",
            "Previous Version",
            "New Version",
            "Error Type",
            "Error",
        ])
        for outcome in result.completed_tables + result.failed_tables:
            writer.writerow([
                outcome.table,
                outcome.status.value,
                outcome.staged_rows,
                outcome.previous_version if outcome.previous_version is not None else "",
                outcome.new_version if outcome.new_version is not None else "",
                outcome.error_type or "",
                outcome.error or "",
            ])


def format_run_console(result: RunResult) -> str:
    """
    Format a run result for the terminal.

    Returns:
        Multi-line summary with one line per staged or failed table
    """
    report: dict[str, Any] = result.to_dict()
    lines = [
        "=" * 80,
        "CHANGE TRACKING STAGING RUN",
        "=" * 80,
        f"Run ID: {report['run_id']}",
        f"State: {report['state']}",
        f"Cutover Version: {report['cutover_version']}",
        f"Started: {report['started_at']}",
        f"Duration: {report['duration_seconds']:.2f}s",
        f"Tables Succeeded: {report['succeeded']} ({report['skipped']} unchanged)",
        f"Tables Failed: {report['failed']}",
        f"Rows Staged: {report['staged_rows']}",
    ]

    staged = [o for o in result.completed_tables if o.staged_rows]
    if staged:
        lines.append("")
        lines.append("STAGED:")
        lines.append("-" * 80)
        for outcome in staged:
            lines.append(
                f"  {outcome.table}: {outcome.staged_rows} key(s), "
                f"watermark {outcome.previous_version} -> {outcome.new_version}"
            )

    if result.failed_tables:
        lines.append("")
        lines.append("FAILED:")
        lines.append("-" * 80)
        for outcome in result.failed_tables:
            lines.append(f"  {outcome.table} [{outcome.status.value}] {outcome.error_type}")
            lines.append(f"    {outcome.error}")
            lines.append(f"    watermark left at {outcome.previous_version}")

    lines.append("=" * 80)
    return "\n".join(lines)


def format_watermarks_console(watermarks: list[Watermark]) -> str:
    if not watermarks:
        return "No watermarks recorded"

    width = max(len("Table"), *(len(w.table_name) for w in watermarks))
    lines = [f"{'Table':<{width}}  {'Version':>12}  {'Updated':<25}  Key Columns"]
    lines.append("-" * len(lines[0]))
    for w in watermarks:
        updated = w.updated_at or w.created_at
        lines.append(
            f"{w.table_name:<{width}}  {w.version:>12}  "
            f"{updated.isoformat() if updated else '':<25}  {w.key_columns or ''}"
        )
    return "\n".join(lines)
