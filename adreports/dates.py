"""Date parsing for CLI arguments and resolution of named report date ranges.

Named ranges follow the vendor's semantics: "today" is never part of a
``LAST_*`` range, and weeks are Monday based unless the name says otherwise.
"""

from datetime import date, datetime, timedelta

from adreports.errors import ConfigError
from adreports.schemas import CUSTOM_DATE, DateRange


CLI_DATE_FORMAT = "%Y%m%d"


def parse_cli_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), CLI_DATE_FORMAT).date()
    except ValueError as exc:
        raise ConfigError(f"invalid date {value!r}, expected YYYYMMDD") from exc


def custom_range(start: str, end: str) -> DateRange:
    start_date = parse_cli_date(start)
    end_date = parse_cli_date(end)
    if end_date < start_date:
        raise ConfigError(f"end date {end} is before start date {start}")
    return DateRange(CUSTOM_DATE, start_date, end_date)


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _resolve(name: str, today: date) -> tuple[date, date]:
    yesterday = today - timedelta(days=1)
    monday = today - timedelta(days=today.weekday())
    # weekday() is 0 on Monday, isoweekday() % 7 is 0 on Sunday
    sunday = today - timedelta(days=today.isoweekday() % 7)

    if name == "TODAY":
        return today, today
    if name == "YESTERDAY":
        return yesterday, yesterday
    if name == "LAST_7_DAYS":
        return today - timedelta(days=7), yesterday
    if name == "LAST_14_DAYS":
        return today - timedelta(days=14), yesterday
    if name == "LAST_30_DAYS":
        return today - timedelta(days=30), yesterday
    if name == "LAST_WEEK":
        return monday - timedelta(days=7), monday - timedelta(days=1)
    if name == "LAST_BUSINESS_WEEK":
        return monday - timedelta(days=7), monday - timedelta(days=3)
    if name == "LAST_WEEK_SUN_SAT":
        return sunday - timedelta(days=7), sunday - timedelta(days=1)
    if name == "THIS_WEEK_MON_TODAY":
        return monday, today
    if name == "THIS_WEEK_SUN_TODAY":
        return sunday, today
    if name == "THIS_MONTH":
        return _month_start(today), today
    if name == "LAST_MONTH":
        last_month_end = _month_start(today) - timedelta(days=1)
        return _month_start(last_month_end), last_month_end
    raise ConfigError(f"unsupported date range {name!r}")


NAMED_RANGES = (
    "TODAY",
    "YESTERDAY",
    "LAST_7_DAYS",
    "LAST_14_DAYS",
    "LAST_30_DAYS",
    "LAST_WEEK",
    "LAST_BUSINESS_WEEK",
    "LAST_WEEK_SUN_SAT",
    "THIS_WEEK_MON_TODAY",
    "THIS_WEEK_SUN_TODAY",
    "THIS_MONTH",
    "LAST_MONTH",
)


def named_range(name: str, today: date | None = None) -> DateRange:
    normalized = name.strip().upper()
    start, end = _resolve(normalized, today or date.today())
    return DateRange(normalized, start, end)
