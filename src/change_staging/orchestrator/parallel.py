"""
Bounded worker pool for per-table staging tasks.

Tables share nothing but the cutover, so each one runs as an independent
task on a ThreadPoolExecutor. Timeouts and cancellation are cooperative:
the task checks its TaskContext between rows, before the sink write and
before the watermark advance, so a task that ran out of time or was
cancelled never advances its watermark.

A task stuck in a blocking driver call cannot reach a checkpoint. Once it
is ``grace_seconds`` past its deadline the runner stops waiting for it and
reports it as timed out; the database query timeout is what finally
unblocks the thread.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from opentelemetry import trace

from change_staging.errors import RunCancelled, TableTimeout
from change_staging.models import TableOutcome, TableStatus, TrackedTable
from utils.tracing import trace_operation

from .metrics import ACTIVE_WORKERS, TABLE_DURATION, TABLES_PROCESSED

logger = logging.getLogger(__name__)


class TaskContext:
    """Deadline and cancellation token for one table task."""

    def __init__(
        self,
        table: str,
        timeout_seconds: float,
        cancel_event: threading.Event,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.table = table
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event
        self._clock = clock
        self.started_at = clock()
        self.deadline = self.started_at + timeout_seconds
        # Set by the task once known, for reporting an abandoned task
        self.previous_version: int | None = None

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def expired(self) -> bool:
        return self._clock() > self.deadline

    def overdue(self, grace_seconds: float) -> bool:
        return self._clock() > self.deadline + grace_seconds

    def checkpoint(self, stage: str = "") -> None:
        """
        Raise if the task should stop here.

        Raises:
            RunCancelled: If the run was cancelled
            TableTimeout: If the per-table timeout has passed
        """
        where = f" before {stage}" if stage else ""
        if self.cancel_event.is_set():
            raise RunCancelled(f"Run cancelled{where}", table=self.table)
        if self.expired:
            raise TableTimeout(
                f"Timeout after {self.timeout_seconds}s{where}", table=self.table
            )


TableTask = Callable[[TrackedTable, TaskContext], TableOutcome]


class ParallelTableRunner:
    """
    Runs one task per table on a bounded pool and collects their outcomes.

    Tasks report table-level failures through their TableOutcome. Any
    exception escaping a task is treated as fatal for the run: remaining
    tasks are cancelled, in-flight ones are allowed to reach their next
    checkpoint, and the exception is re-raised.
    """

    def __init__(
        self,
        max_workers: int = 4,
        timeout_per_table: float = 3600,
        grace_seconds: float = 30.0,
    ):
        """
        Args:
            max_workers: Maximum concurrent table tasks
            timeout_per_table: Seconds each table task may run
            grace_seconds: Seconds past its deadline after which a task that
                has not returned is abandoned and reported as timed out
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.max_workers = max_workers
        self.timeout_per_table = timeout_per_table
        self.grace_seconds = grace_seconds
        self._metrics_lock = threading.Lock()

        logger.info(
            f"ParallelTableRunner initialized: max_workers={max_workers}, "
            f"timeout_per_table={timeout_per_table}s"
        )

    @property
    def poll_interval(self) -> float:
        return min(1.0, max(0.01, self.grace_seconds / 2))

    def run(
        self,
        tables: list[TrackedTable],
        task: TableTask,
        cancel_event: threading.Event,
    ) -> list[TableOutcome]:
        """
        Run ``task`` for every table.

        Returns:
            One outcome per table, in completion order

        Raises:
            WatermarkRegressed: Or any other exception a task let escape
        """
        if not tables:
            logger.warning("No tables to process")
            return []

        outcomes: list[TableOutcome] = []
        fatal: BaseException | None = None
        contexts: dict[str, TaskContext] = {}
        abandoned = False

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(tables)),
            thread_name_prefix="ct-table",
        )
        try:
            futures: dict[Future, TrackedTable] = {
                executor.submit(self._run_task, table, task, cancel_event, contexts): table
                for table in tables
            }
            pending = set(futures)

            while pending:
                done, pending = wait(
                    pending, timeout=self.poll_interval, return_when=FIRST_COMPLETED
                )

                for future in done:
                    table = futures[future]
                    try:
                        outcome = future.result()
                    except BaseException as e:
                        if fatal is None:
                            fatal = e
                            logger.critical(
                                f"Fatal error in table task {table.qualified_name}: "
                                f"{type(e).__name__}: {e}; cancelling remaining tables"
                            )
                            cancel_event.set()
                        continue
                    self._record(outcomes, outcome, len(tables))

                for future in list(pending):
                    context = contexts.get(futures[future].qualified_name)
                    if context is None or not context.overdue(self.grace_seconds):
                        continue
                    pending.discard(future)
                    abandoned = True
                    future.add_done_callback(self._log_late_finish)
                    self._record(outcomes, self._abandon(context), len(tables))
        finally:
            # Abandoned threads are still blocked in the driver; do not join them
            executor.shutdown(wait=not abandoned)
            with self._metrics_lock:
                ACTIVE_WORKERS.set(0)

        if fatal is not None:
            raise fatal
        return outcomes

    def _record(self, outcomes: list[TableOutcome], outcome: TableOutcome, total: int) -> None:
        outcomes.append(outcome)
        TABLES_PROCESSED.labels(status=outcome.status.value).inc()
        logger.info(
            f"{'✓' if outcome.succeeded else '✗'} {outcome.table} "
            f"{outcome.status.value} ({len(outcomes)}/{total})"
        )

    def _abandon(self, context: TaskContext) -> TableOutcome:
        logger.error(
            f"✗ {context.table} still blocked {context.elapsed:.1f}s after start "
            f"(timeout {context.timeout_seconds}s); abandoning it, "
            f"watermark left at {context.previous_version}"
        )
        TABLE_DURATION.labels(table=context.table).observe(context.elapsed)
        return TableOutcome(
            table=context.table,
            status=TableStatus.TIMEOUT,
            previous_version=context.previous_version,
            new_version=context.previous_version,
            error_type=TableTimeout.__name__,
            error=(
                f"Timeout after {context.timeout_seconds}s; "
                "task abandoned while blocked in a database call"
            ),
            duration_seconds=context.elapsed,
        )

    @staticmethod
    def _log_late_finish(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        status = type(error).__name__ if error else future.result().status.value
        logger.warning(f"Abandoned table task finished late: {status}")

    def _run_task(
        self,
        table: TrackedTable,
        task: TableTask,
        cancel_event: threading.Event,
        contexts: dict[str, TaskContext],
    ) -> TableOutcome:
        name = table.qualified_name

        if cancel_event.is_set():
            return TableOutcome(
                table=name,
                status=TableStatus.CANCELLED,
                error_type=RunCancelled.__name__,
                error="Run cancelled before the table was started",
            )

        context = TaskContext(name, self.timeout_per_table, cancel_event)
        contexts[name] = context
        with self._metrics_lock:
            ACTIVE_WORKERS.inc()

        try:
            with trace_operation(
                "stage_table", kind=trace.SpanKind.INTERNAL, table=name
            ) as span:
                outcome = task(table, context)
                span.set_attribute("status", outcome.status.value)
                span.set_attribute("staged_rows", outcome.staged_rows)
        finally:
            with self._metrics_lock:
                ACTIVE_WORKERS.dec()

        outcome.duration_seconds = context.elapsed
        TABLE_DURATION.labels(table=name).observe(outcome.duration_seconds)
        return outcome
