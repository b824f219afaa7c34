import argparse
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
import logging
import signal

import requests

from adreports.accounts import read_account_ids_file, resolve_account_ids
from adreports.config import Settings, load_settings
from adreports.database import build_session_factory
from adreports.dates import NAMED_RANGES, custom_range, named_range
from adreports.errors import ConfigError, ReportingError
from adreports.exporter import CommandPdfConverter, export_account_reports
from adreports.fetcher import ReportDownloadError
from adreports.orchestrator import ReportRunner
from adreports.persistence import SqlEntityPersister
from adreports.scheduler import start_scheduler
from adreports.schemas import DateRange
from adreports.service import build_client, prepare_run


logger = logging.getLogger("adreports")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--file", required=True, help="properties file with API, database and run settings")
    common.add_argument(
        "--account-ids-file",
        help="only process the account ids listed in this file, one per line",
    )
    common.add_argument("--verbose", action="store_true", help="print log output on the console")
    common.add_argument("--debug", action="store_true", help="log debug information")

    parser = argparse.ArgumentParser(description="Download advertising reports and store them as typed entities")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", parents=[common], help="download reports for all accounts once")
    run_parser.add_argument("--start-date", help="start date for CUSTOM_DATE reports (YYYYMMDD)")
    run_parser.add_argument("--end-date", help="end date for CUSTOM_DATE reports (YYYYMMDD)")
    run_parser.add_argument("--date-range", choices=NAMED_RANGES, help="named relative date range")
    run_parser.add_argument("--concurrency", type=int, help="number of reports downloaded in parallel")

    export_parser = subparsers.add_parser(
        "export",
        parents=[common],
        help="render per-account HTML (and PDF) summaries from stored account reports",
    )
    export_parser.add_argument("--html-template", required=True, help="HTML template with {{PLACEHOLDER}} markers")
    export_parser.add_argument("--output-dir", required=True, help="directory receiving the generated files")
    export_parser.add_argument("--start-date", required=True, help="first day to include (YYYYMMDD)")
    export_parser.add_argument("--end-date", required=True, help="last day to include (YYYYMMDD)")

    schedule_parser = subparsers.add_parser("schedule", parents=[common], help="start the daily report scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args(argv)


def configure_logging(settings: Settings, *, verbose: bool, debug: bool) -> None:
    level = logging.DEBUG if debug else getattr(logging, settings.log_level.upper(), logging.INFO)

    console = logging.StreamHandler()
    console.setLevel(level if verbose else logging.ERROR)
    handlers: list[logging.Handler] = [console]
    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        file_handler.setLevel(level)
        handlers.append(file_handler)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def resolve_date_range(args: argparse.Namespace) -> DateRange:
    if args.start_date and args.end_date:
        return custom_range(args.start_date, args.end_date)
    if args.date_range:
        return named_range(args.date_range)
    raise ConfigError("configuration incomplete: pass --start-date and --end-date, or --date-range")


@contextmanager
def cancel_on_signals(runner: ReportRunner) -> Iterator[None]:
    def handle(signum: int, _frame: object) -> None:
        logger.warning("received signal %s, cancelling run", signal.Signals(signum).name)
        runner.cancel()

    previous = {signum: signal.signal(signum, handle) for signum in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    date_range = resolve_date_range(args)
    logger.info("starting report download", extra={"date_range": date_range.label})

    session_factory = build_session_factory(settings.database_url)
    runner, account_ids, definitions = prepare_run(
        settings,
        session_factory,
        date_range,
        accounts_file=args.account_ids_file,
    )
    with cancel_on_signals(runner):
        summary = runner.run(account_ids, definitions, concurrency=args.concurrency)

    print(
        "run_id={run_id} run_key={run_key} status={status} tasks={tasks} succeeded={succeeded} failed={failed} cancelled={cancelled} rows={rows} rejected={rejected}".format(
            run_id=summary.run_id,
            run_key=summary.run_key,
            status=summary.status,
            tasks=summary.total_tasks,
            succeeded=summary.succeeded,
            failed=summary.failed,
            cancelled=summary.cancelled,
            rows=summary.rows_persisted,
            rejected=summary.rows_rejected,
        )
    )
    return 0 if summary.status == "succeeded" else 1


def export_command(args: argparse.Namespace, settings: Settings) -> int:
    if settings.entity_store != "sql":
        raise ConfigError("export reads stored reports and requires ENTITY_STORE=sql")
    date_range = custom_range(args.start_date, args.end_date)

    session_factory = build_session_factory(settings.database_url)
    # Stored reports are read back without contacting the API when accounts are listed.
    if args.account_ids_file:
        account_ids = sorted(read_account_ids_file(args.account_ids_file))
    else:
        account_ids = resolve_account_ids(build_client(settings), settings)
    converter = CommandPdfConverter(settings.pdf_converter_command) if settings.pdf_converter_command else None
    if converter is None:
        logger.info("no PDF converter configured, writing HTML only")

    written = export_account_reports(
        SqlEntityPersister(session_factory),
        account_ids,
        date_range.start,
        date_range.end,
        args.html_template,
        args.output_dir,
        converter=converter,
    )
    print(f"exported={len(written)} output_dir={args.output_dir}")
    return 0


def schedule_command(args: argparse.Namespace, settings: Settings) -> int:
    session_factory = build_session_factory(settings.database_url)
    start_scheduler(settings, session_factory, accounts_file=args.account_ids_file, run_now=args.run_now)
    return 0


COMMANDS = {
    "run": run_command,
    "export": export_command,
    "schedule": schedule_command,
}


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)

    try:
        settings = load_settings(args.file)
        configure_logging(settings, verbose=args.verbose, debug=args.debug)
        logger.info("using properties file", extra={"path": args.file})
        exit_code = COMMANDS[args.command](args, settings)
    except ConfigError as exc:
        logger.error("configuration error: %s", exc)
        raise SystemExit(1) from exc
    except (ReportingError, ReportDownloadError, requests.RequestException, OSError) as exc:
        logger.exception("report processing failed")
        raise SystemExit(1) from exc

    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
