"""
Run orchestrator: one end-to-end staging pass over every tracked table.

States:
    Idle -> CutoverEstablished -> Seeding -> StagingReset -> ProcessingTables
         -> Completed | PartiallyFailed

Cutover capture, discovery, seeding and the staging reset happen once,
synchronously, before any table task starts. Table tasks then run in
parallel; each one advances its own watermark only after its staging write
has been committed.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from functools import partial

from change_staging.catalog import CatalogReader
from change_staging.enumerator import ChangeEnumerator
from change_staging.errors import (
    CatalogUnavailable,
    ChangeStagingError,
    EnumeratorTransient,
    KeyShapeChanged,
    RunCancelled,
    SinkTransient,
    TableTimeout,
    WatermarkRegressed,
)
from change_staging.models import (
    RunResult,
    RunState,
    StagedChange,
    TableOutcome,
    TableStatus,
    TrackedTable,
    Watermark,
)
from change_staging.sink import StagingSink
from change_staging.watermark import WatermarkStore
from utils.logging import run_log_context
from utils.retry import retry_with_backoff
from utils.tracing import add_span_event, trace_function, trace_operation

from .metrics import (
    CUTOVER_VERSION,
    RUN_DURATION,
    RUNS_TOTAL,
    STAGED_ROWS,
    TRANSIENT_RETRIES,
    WATERMARK_VERSION,
)
from .parallel import ParallelTableRunner, TaskContext

logger = logging.getLogger(__name__)

# Rows between cancellation/timeout checks while reading a change feed
CHECKPOINT_EVERY = 1000


class RunOrchestrator:
    """
    Drives staging runs.

    The cutover version is captured once per run and passed explicitly to
    every table task; nothing about a run is kept on the instance except
    its current state and cancel token.
    """

    def __init__(
        self,
        catalog: CatalogReader,
        watermarks: WatermarkStore,
        enumerator: ChangeEnumerator,
        sink: StagingSink,
        max_workers: int = 4,
        timeout_per_table: float = 3600,
        timeout_grace: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            catalog: Discovers tracked tables and the current version
            watermarks: Per-table watermark store
            enumerator: Changed-key fingerprints per table
            sink: Shared staging destination
            max_workers: Concurrent table tasks
            timeout_per_table: Seconds each table task may run
            timeout_grace: Seconds past its timeout before a table task stuck in
                a blocking call is abandoned
            max_retries: In-task retries after a transient enumerator or sink failure
            retry_base_delay: First retry delay in seconds, doubled per retry
            sleep: Sleep function used between retries
        """
        self.catalog = catalog
        self.watermarks = watermarks
        self.enumerator = enumerator
        self.sink = sink
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self.runner = ParallelTableRunner(
            max_workers=max_workers,
            timeout_per_table=timeout_per_table,
            grace_seconds=timeout_grace,
        )

        self.state = RunState.IDLE
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()

    def cancel(self) -> None:
        """
        Cancel the run in progress.

        Tables not yet started are reported as cancelled; running ones stop
        at their next checkpoint, before advancing their watermark.
        """
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def run_once(self, include_tables: Iterable[str] | None = None) -> RunResult:
        """
        Stage every tracked table's changes up to a fresh cutover.

        Args:
            include_tables: Optional ``schema.table`` names to restrict
                processing to. Discovery, seeding and the staging reset
                still cover every tracked table.

        Returns:
            RunResult with per-table outcomes. Partial failure is reported
            here, never raised.

        Raises:
            CatalogUnavailable: If the cutover or table list cannot be read
            WatermarkRegressed: If watermark bookkeeping is inconsistent
            Exception: Whatever the sink raised if the staging reset failed
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A staging run is already in progress")

        run_id = uuid.uuid4().hex[:12]
        self._cancel_event.clear()
        self.state = RunState.IDLE
        started = time.monotonic()

        try:
            with run_log_context(run_id), trace_operation("staging_run", run_id=run_id):
                result = self._run(run_id, include_tables)
        except Exception as e:
            RUNS_TOTAL.labels(state="Aborted").inc()
            logger.error(
                f"Staging run {run_id} aborted in state {self.state.value}: "
                f"{type(e).__name__}: {e}"
            )
            raise
        finally:
            RUN_DURATION.observe(time.monotonic() - started)
            self._run_lock.release()

        RUNS_TOTAL.labels(state=result.state.value).inc()
        logger.info(
            f"Staging run {run_id} {result.state.value}: "
            f"{result.succeeded_count} succeeded ({len(result.skipped_tables)} unchanged), "
            f"{result.failed_count} failed, {result.staged_rows} row(s) staged "
            f"at cutover {result.cutover_version} in {result.duration_seconds:.2f}s"
        )
        return result

    @trace_function("reseed_watermark")
    def reseed(self, table_name: str) -> Watermark:
        """
        Accept a table's current key shape and move its watermark up to the
        engine's minimum valid version.

        Used after VersionExpired or KeyShapeChanged. Changes between the old
        watermark and the new one are never staged, so downstream consumers
        must reload that table in full.

        Args:
            table_name: ``schema.table`` of a change-tracked table

        Returns:
            The table's new watermark

        Raises:
            CatalogUnavailable: If the table is not under change tracking
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A staging run is in progress; re-seed after it finishes")

        try:
            tracked = {t.qualified_name.lower(): t for t in self.catalog.discover_tracked_tables()}
            table = tracked.get(table_name.lower())
            if table is None:
                raise CatalogUnavailable(
                    f"{table_name} is not under change tracking", table=table_name
                )

            previous = self.watermarks.read_entry(table)
            watermark = self.watermarks.reseed(table, table.min_valid_version)
        finally:
            self._run_lock.release()

        old_version = previous.version if previous is not None else None
        if old_version is None or watermark.version > old_version:
            logger.warning(
                f"{table.qualified_name} re-seeded at version {watermark.version} "
                f"(was {old_version}); changes before it will not be staged, "
                f"reload the table in full downstream"
            )
        else:
            logger.info(
                f"{table.qualified_name} key shape accepted at version {watermark.version}"
            )
        WATERMARK_VERSION.labels(table=table.qualified_name).set(watermark.version)
        return watermark

    def _transition(self, state: RunState) -> None:
        logger.debug(f"Run state {self.state.value} -> {state.value}")
        self.state = state
        add_span_event("run_state", state=state.value)

    def _run(self, run_id: str, include_tables: Iterable[str] | None) -> RunResult:
        started_at = datetime.now(UTC)

        cutover = self.catalog.current_version()
        self._transition(RunState.CUTOVER_ESTABLISHED)
        CUTOVER_VERSION.set(cutover)
        logger.info(f"Staging run {run_id} started at cutover version {cutover}")

        self._transition(RunState.SEEDING)
        tables = self.catalog.discover_tracked_tables()
        self.watermarks.seed_missing(tables)
        tables = self._select(tables, include_tables)

        self._transition(RunState.STAGING_RESET)
        self.sink.reset()

        self._transition(RunState.PROCESSING_TABLES)
        outcomes = self.runner.run(
            tables, partial(self._process_table, cutover=cutover), self._cancel_event
        )

        completed = sorted((o for o in outcomes if o.succeeded), key=lambda o: o.table)
        failed = sorted((o for o in outcomes if not o.succeeded), key=lambda o: o.table)
        self._transition(RunState.PARTIALLY_FAILED if failed else RunState.COMPLETED)

        return RunResult(
            run_id=run_id,
            state=self.state,
            cutover_version=cutover,
            completed_tables=completed,
            failed_tables=failed,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )

    @staticmethod
    def _select(
        tables: list[TrackedTable], include_tables: Iterable[str] | None
    ) -> list[TrackedTable]:
        if include_tables is None:
            return tables

        wanted = {name.lower() for name in include_tables}
        selected = [t for t in tables if t.qualified_name.lower() in wanted]
        missing = wanted - {t.qualified_name.lower() for t in selected}
        if missing:
            logger.warning(
                f"Requested table(s) not under change tracking: {', '.join(sorted(missing))}"
            )
        return selected

    def _process_table(
        self, table: TrackedTable, context: TaskContext, cutover: int
    ) -> TableOutcome:
        """
        Stage one table's window (watermark, cutover] and advance its watermark.

        Table-level failures become a failed outcome; only
        WatermarkRegressed escapes.
        """
        name = table.qualified_name
        previous: int | None = None

        try:
            context.checkpoint("reading watermark")
            entry = self.watermarks.read_entry(table)
            previous = entry.version if entry is not None else 0
            context.previous_version = previous

            if entry is not None and entry.key_columns and entry.key_columns != table.key_signature:
                raise KeyShapeChanged(name, entry.key_columns, table.key_signature)

            if previous >= cutover:
                logger.debug(f"{name}: watermark {previous} >= cutover {cutover}, nothing to stage")
                return TableOutcome(
                    table=name,
                    status=TableStatus.SKIPPED,
                    previous_version=previous,
                    new_version=previous,
                )

            fingerprints = self._collect_with_retry(table, previous, cutover, context)
            rows = [StagedChange.for_table(table, fp) for fp in fingerprints]

            written = self._write_with_retry(rows, context) if rows else 0

            context.checkpoint("watermark advance")
            self.watermarks.advance(table, cutover, key_columns=table.key_signature)

        except WatermarkRegressed:
            raise
        except (TableTimeout, RunCancelled) as e:
            status = TableStatus.TIMEOUT if isinstance(e, TableTimeout) else TableStatus.CANCELLED
            logger.error(f"✗ {name} {status.value}: {e}; watermark left at {previous}")
            return self._failed(name, status, previous, e)
        except Exception as e:
            logger.error(
                f"✗ {name} failed: {type(e).__name__}: {e}; watermark left at {previous}",
                exc_info=not isinstance(e, ChangeStagingError),
                extra={"table_name": name, "error_type": type(e).__name__},
            )
            return self._failed(name, TableStatus.FAILED, previous, e)

        STAGED_ROWS.labels(table=name).inc(written)
        WATERMARK_VERSION.labels(table=name).set(cutover)
        logger.info(f"{name}: staged {written} key(s) in ({previous}, {cutover}]")
        return TableOutcome(
            table=name,
            status=TableStatus.STAGED,
            staged_rows=written,
            previous_version=previous,
            new_version=cutover,
        )

    @staticmethod
    def _failed(
        name: str, status: TableStatus, previous: int | None, error: Exception
    ) -> TableOutcome:
        return TableOutcome(
            table=name,
            status=status,
            previous_version=previous,
            new_version=previous,
            error_type=type(error).__name__,
            error=str(error),
        )

    def _retrying(self, func: Callable, exception: type[Exception], kind: str) -> Callable:
        return retry_with_backoff(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            retryable_exceptions=(exception,),
            on_retry=lambda attempt, e, delay: TRANSIENT_RETRIES.labels(kind=kind).inc(),
            sleep=self._sleep,
        )(func)

    @staticmethod
    def _timed_out(context: TaskContext, stage: str, error: Exception) -> TableTimeout:
        return TableTimeout(
            f"Timeout after {context.timeout_seconds}s {stage}: {error}", table=context.table
        )

    def _collect_with_retry(
        self, table: TrackedTable, since: int, upto: int, context: TaskContext
    ) -> list[str]:
        collect = self._retrying(self._collect, EnumeratorTransient, "enumerator")
        try:
            return collect(table, since, upto, context)
        except EnumeratorTransient as e:
            # A query cancelled by the driver timeout surfaces as a transient error
            if context.expired:
                raise self._timed_out(context, "reading changes", e) from e
            raise

    def _collect(
        self, table: TrackedTable, since: int, upto: int, context: TaskContext
    ) -> list[str]:
        """Distinct fingerprints of the window, in first-seen order."""
        context.checkpoint("reading changes")
        distinct: dict[str, None] = {}
        for count, key in enumerate(self.enumerator.enumerate_changes(table, since, upto), 1):
            distinct[key.fingerprint] = None
            if count % CHECKPOINT_EVERY == 0:
                context.checkpoint("reading changes")
        return list(distinct)

    def _write_with_retry(self, rows: list[StagedChange], context: TaskContext) -> int:
        def attempt() -> int:
            context.checkpoint("staging write")
            return self.sink.write(rows)

        write = self._retrying(attempt, SinkTransient, "sink")
        try:
            return write()
        except SinkTransient as e:
            if context.expired:
                raise self._timed_out(context, "writing staging rows", e) from e
            raise
