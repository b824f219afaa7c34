import json

from sqlalchemy.orm import Session

from adreports.db_models import RejectedRowRecord, ReportRun, TaskRun, utc_now
from adreports.schemas import AccountTask, RejectedRow, RunSummary


def create_run(db: Session, *, run_key: str, date_range: str, trigger_source: str, total_tasks: int) -> ReportRun:
    run = ReportRun(
        run_key=run_key,
        date_range=date_range,
        trigger_source=trigger_source,
        status="queued",
        total_tasks=total_tasks,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def mark_run_running(db: Session, run: ReportRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def finish_run(db: Session, run: ReportRun, summary: RunSummary, *, error: str | None = None) -> None:
    run.status = summary.status
    run.succeeded_tasks = summary.succeeded
    run.failed_tasks = summary.failed
    run.cancelled_tasks = summary.cancelled
    run.rows_persisted = summary.rows_persisted
    run.rows_rejected = summary.rows_rejected
    run.completed_at = utc_now()
    run.error = error
    db.commit()


def create_task_attempt(db: Session, *, run_id: int, task: AccountTask, attempt: int) -> TaskRun:
    task_run = TaskRun(
        run_id=run_id,
        account_id=task.account_id,
        report_type=task.report_type,
        attempt=attempt,
        status="started",
        started_at=utc_now(),
    )
    db.add(task_run)
    db.commit()
    db.refresh(task_run)
    return task_run


def finish_task_attempt(
    db: Session,
    task_run: TaskRun,
    *,
    status: str,
    rows_persisted: int = 0,
    rows_rejected: int = 0,
    error: str | None = None,
) -> None:
    finished_at = utc_now()
    task_run.status = status
    task_run.completed_at = finished_at
    task_run.duration_ms = (finished_at - task_run.started_at).total_seconds() * 1000
    task_run.rows_persisted = rows_persisted
    task_run.rows_rejected = rows_rejected
    task_run.error = error
    db.commit()


def record_cancelled_task(db: Session, *, run_id: int, task: AccountTask, attempt: int) -> None:
    task_run = create_task_attempt(db, run_id=run_id, task=task, attempt=attempt)
    finish_task_attempt(db, task_run, status="cancelled", error="run cancelled before the task started")


def store_rejected_rows(db: Session, *, run_id: int, task: AccountTask, rejected: tuple[RejectedRow, ...]) -> None:
    for row in rejected:
        db.add(
            RejectedRowRecord(
                run_id=run_id,
                account_id=task.account_id,
                report_type=task.report_type,
                row_index=row.row_index,
                raw_row=json.dumps(list(row.record)),
                reason=row.reason,
            )
        )
    db.commit()
