from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
import heapq
import itertools
import logging
import threading
import time
import uuid

from sqlalchemy.orm import Session, sessionmaker

from adreports.config import Settings
from adreports.db_models import TaskRun
from adreports.entities import ReportEntity, get_schema
from adreports.errors import ConfigError, FetchError, MappingError, PersistError
from adreports.fetcher import ReportFetcher
from adreports.persistence import EntityPersister
from adreports.retry import RetryExhaustedError, backoff_delay, run_with_retries
from adreports.row_mapper import RowMapper, read_report
from adreports.run_store import (
    create_run,
    create_task_attempt,
    finish_run,
    finish_task_attempt,
    mark_run_running,
    record_cancelled_task,
    store_rejected_rows,
)
from adreports.schemas import AccountTask, RejectedRow, ReportDefinition, RunSummary, TaskOutcome


logger = logging.getLogger(__name__)

# (not-before time, insertion order, task, attempt number)
ReadyEntry = tuple[float, int, AccountTask, int]


def expand_tasks(account_ids: Iterable[int], definitions: Sequence[ReportDefinition]) -> list[AccountTask]:
    return [
        AccountTask(account_id=account_id, definition=definition)
        for account_id in sorted(set(account_ids))
        for definition in definitions
    ]


class ReportRunner:
    def __init__(
        self,
        settings: Settings,
        fetcher: ReportFetcher,
        persister: EntityPersister,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher
        self.persister = persister
        self.session_factory = session_factory
        self._clock = clock
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            logger.warning("cancellation requested, in-flight tasks will be allowed to finish")
        self._cancelled.set()

    def run(
        self,
        account_ids: Iterable[int],
        definitions: Sequence[ReportDefinition],
        *,
        concurrency: int | None = None,
        run_key: str | None = None,
        trigger_source: str = "manual",
    ) -> RunSummary:
        workers = self.settings.concurrency if concurrency is None else concurrency
        if workers < 1:
            raise ConfigError(f"concurrency must be at least 1, got {workers}")

        tasks = expand_tasks(account_ids, definitions)
        run_key = run_key or f"{trigger_source}-{uuid.uuid4().hex[:12]}"
        range_label = ",".join(sorted({definition.date_range.label for definition in definitions})) or "-"

        with self.session_factory() as db:
            run = create_run(
                db,
                run_key=run_key,
                date_range=range_label,
                trigger_source=trigger_source,
                total_tasks=len(tasks),
            )
            mark_run_running(db, run)
            summary = RunSummary(run_id=run.id, run_key=run_key, total_tasks=len(tasks))
            logger.info(
                "report run started",
                extra={"run_key": run_key, "tasks": len(tasks), "concurrency": workers, "date_range": range_label},
            )

            try:
                self._execute_all(db, run.id, tasks, workers, summary)
            except Exception as exc:
                summary.status = "failed"
                finish_run(db, run, summary, error=str(exc))
                logger.exception("report run aborted", extra={"run_key": run_key})
                raise

            summary.status = self._final_status(summary)
            error = None
            if summary.status == "failed":
                error = (
                    f"{summary.failed} of {summary.total_tasks} tasks failed, failure rate "
                    f"{summary.failure_rate:.2f} exceeds {self.settings.max_failure_rate:.2f}"
                )
            elif summary.status == "cancelled":
                error = f"run cancelled with {summary.cancelled} task(s) not started"
            finish_run(db, run, summary, error=error)

        log = logger.error if summary.status == "failed" else logger.info
        log(
            "report run finished",
            extra={
                "run_key": run_key,
                "status": summary.status,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "cancelled": summary.cancelled,
                "rows_persisted": summary.rows_persisted,
                "rows_rejected": summary.rows_rejected,
            },
        )
        return summary

    def _execute_all(
        self,
        db: Session,
        run_id: int,
        tasks: list[AccountTask],
        workers: int,
        summary: RunSummary,
    ) -> None:
        sequence = itertools.count()
        ready: list[ReadyEntry] = []
        for task in tasks:
            heapq.heappush(ready, (0.0, next(sequence), task, 1))
        in_flight: dict[Future[TaskOutcome], TaskRun] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="report-worker") as pool:
            while ready or in_flight:
                if self._cancelled.is_set() and ready:
                    for _, _, task, attempt in sorted(ready):
                        record_cancelled_task(db, run_id=run_id, task=task, attempt=attempt)
                        summary.record(
                            TaskOutcome(task=task, status="cancelled", attempts=attempt - 1, error="run cancelled")
                        )
                    ready.clear()

                now = self._clock()
                while ready and len(in_flight) < workers and ready[0][0] <= now:
                    _, _, task, attempt = heapq.heappop(ready)
                    task_run = create_task_attempt(db, run_id=run_id, task=task, attempt=attempt)
                    future = pool.submit(self._execute_task, task, attempt)
                    in_flight[future] = task_run

                if not in_flight:
                    if ready:
                        # Only delayed retries remain; wake early if the run is cancelled.
                        self._cancelled.wait(max(0.0, ready[0][0] - self._clock()))
                    continue

                timeout = None
                if ready and len(in_flight) < workers:
                    timeout = max(0.0, ready[0][0] - self._clock())
                done, _ = wait(in_flight, timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    task_run = in_flight.pop(future)
                    self._handle_outcome(db, run_id, summary, ready, sequence, task_run, future.result())

    def _handle_outcome(
        self,
        db: Session,
        run_id: int,
        summary: RunSummary,
        ready: list[ReadyEntry],
        sequence: Iterator[int],
        task_run: TaskRun,
        outcome: TaskOutcome,
    ) -> None:
        task = outcome.task
        retryable = (
            outcome.status == "failed"
            and outcome.transient
            and outcome.attempts < self.settings.max_task_attempts
        )
        finish_task_attempt(
            db,
            task_run,
            status="retrying" if retryable else outcome.status,
            rows_persisted=outcome.rows_persisted,
            rows_rejected=outcome.rows_rejected,
            error=outcome.error,
        )

        if retryable:
            delay = backoff_delay(
                outcome.attempts,
                base_seconds=self.settings.retry_backoff_seconds,
                max_seconds=self.settings.retry_backoff_max_seconds,
            )
            logger.warning(
                "task failed with a transient error, rescheduling",
                extra={
                    "account_id": task.account_id,
                    "report_type": task.report_type,
                    "attempt": outcome.attempts,
                    "delay_seconds": delay,
                    "error": outcome.error,
                },
            )
            heapq.heappush(ready, (self._clock() + delay, next(sequence), task, outcome.attempts + 1))
            return

        if outcome.rejected:
            store_rejected_rows(db, run_id=run_id, task=task, rejected=outcome.rejected)
        summary.record(outcome)

        if outcome.status == "succeeded":
            logger.info(
                "task succeeded",
                extra={
                    "account_id": task.account_id,
                    "report_type": task.report_type,
                    "attempt": outcome.attempts,
                    "rows_persisted": outcome.rows_persisted,
                    "rows_rejected": outcome.rows_rejected,
                },
            )
        else:
            logger.error(
                "task failed",
                extra={
                    "account_id": task.account_id,
                    "report_type": task.report_type,
                    "attempt": outcome.attempts,
                    "error": outcome.error,
                },
            )

    def _execute_task(self, task: AccountTask, attempt: int) -> TaskOutcome:
        rejected: list[RejectedRow] = []
        persisted = 0

        def failure(exc: Exception, transient: bool) -> TaskOutcome:
            return TaskOutcome(
                task=task,
                status="failed",
                attempts=attempt,
                rows_persisted=persisted,
                rows_rejected=len(rejected),
                rejected=tuple(rejected),
                error=str(exc),
                transient=transient,
            )

        try:
            schema = get_schema(task.report_type)
            headers, rows = read_report(self.fetcher.fetch(task.account_id, task.definition))
            if not headers:
                logger.info(
                    "report body is empty",
                    extra={"account_id": task.account_id, "report_type": task.report_type},
                )
                return TaskOutcome(task=task, status="succeeded", attempts=attempt)

            mapper = RowMapper(schema, headers)
            chunk: list[ReportEntity] = []
            for row in rows:
                try:
                    entity = mapper.map(
                        row.fields,
                        row_index=row.index,
                        account_id=task.account_id,
                        date_range=task.date_range,
                    )
                except MappingError as exc:
                    if self.settings.row_error_policy == "abort":
                        raise
                    rejected.append(RejectedRow(row_index=row.index, record=row.fields, reason=str(exc)))
                    continue

                chunk.append(entity)
                if len(chunk) >= self.settings.persist_chunk_size:
                    persisted += self._save_chunk(chunk)
                    chunk = []
            if chunk:
                persisted += self._save_chunk(chunk)
        except FetchError as exc:
            return failure(exc, exc.transient)
        except (ConfigError, MappingError, PersistError) as exc:
            return failure(exc, False)
        except Exception as exc:
            logger.exception(
                "unexpected error while processing task",
                extra={"account_id": task.account_id, "report_type": task.report_type},
            )
            return failure(exc, False)

        return TaskOutcome(
            task=task,
            status="succeeded",
            attempts=attempt,
            rows_persisted=persisted,
            rows_rejected=len(rejected),
            rejected=tuple(rejected),
        )

    def _save_chunk(self, chunk: list[ReportEntity]) -> int:
        entities = list(chunk)
        try:
            return run_with_retries(
                lambda: self.persister.save(entities),
                max_retries=self.settings.max_persist_retries,
                backoff_seconds=self.settings.persist_backoff_seconds,
                should_retry=lambda exc: isinstance(exc, PersistError) and exc.transient,
                on_attempt_failure=lambda attempt, exc: logger.warning(
                    "entity chunk save failed",
                    extra={"attempt": attempt, "chunk_size": len(entities), "error": str(exc)},
                ),
            )
        except RetryExhaustedError as exc:
            raise PersistError(str(exc), transient=False) from exc.last_error

    def _final_status(self, summary: RunSummary) -> str:
        if self._cancelled.is_set() and summary.cancelled:
            return "cancelled"
        if summary.failure_rate > self.settings.max_failure_rate:
            return "failed"
        return "succeeded"
