import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from adreports.config import Settings
from adreports.dates import named_range
from adreports.service import prepare_run


logger = logging.getLogger(__name__)


def _run_daily_reports(settings: Settings, session_factory: sessionmaker[Session], accounts_file: str | None) -> None:
    date_range = named_range(settings.schedule_date_range)
    runner, account_ids, definitions = prepare_run(
        settings,
        session_factory,
        date_range,
        accounts_file=accounts_file,
    )
    summary = runner.run(account_ids, definitions, trigger_source="scheduled")
    if summary.status != "succeeded":
        logger.error(
            "scheduled report run did not succeed",
            extra={"run_key": summary.run_key, "status": summary.status, "failed": summary.failed},
        )
        return
    logger.info(
        "scheduled report run completed",
        extra={"run_key": summary.run_key, "status": summary.status, "rows_persisted": summary.rows_persisted},
    )


def start_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    *,
    accounts_file: str | None = None,
    run_now: bool = False,
) -> None:
    # Fail before starting the loop if the configured range is unusable.
    named_range(settings.schedule_date_range)

    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_daily_reports,
        "cron",
        args=[settings, session_factory, accounts_file],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_reports",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
            "date_range": settings.schedule_date_range,
        },
    )

    if run_now:
        _run_daily_reports(settings, session_factory, accounts_file)

    scheduler.start()
