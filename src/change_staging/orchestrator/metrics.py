"""
Prometheus metrics for staging runs.
"""

from prometheus_client import Counter, Gauge, Histogram

RUNS_TOTAL = Counter(
    "ct_staging_runs_total",
    "Staging runs by terminal state",
    ["state"],  # Completed, PartiallyFailed, Aborted
)

RUN_DURATION = Histogram(
    "ct_staging_run_seconds",
    "Wall time of one staging run",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600, 7200],
)

CUTOVER_VERSION = Gauge(
    "ct_staging_cutover_version",
    "Cutover version of the most recent run",
)

TABLES_PROCESSED = Counter(
    "ct_staging_tables_processed_total",
    "Table tasks by outcome",
    ["status"],  # staged, skipped, failed, timeout, cancelled
)

TABLE_DURATION = Histogram(
    "ct_staging_table_seconds",
    "Time to stage one table",
    ["table"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 600, 1800],
)

STAGED_ROWS = Counter(
    "ct_staging_rows_total",
    "Distinct changed keys written to the staging table",
    ["table"],
)

WATERMARK_VERSION = Gauge(
    "ct_staging_watermark_version",
    "Watermark of each table after its last successful advance",
    ["table"],
)

TRANSIENT_RETRIES = Counter(
    "ct_staging_transient_retries_total",
    "In-task retries after transient failures",
    ["kind"],  # enumerator, sink
)

ACTIVE_WORKERS = Gauge(
    "ct_staging_active_workers",
    "Table tasks currently running",
)
