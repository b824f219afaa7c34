from datetime import date

import pytest

from adreports.dates import NAMED_RANGES, custom_range, named_range
from adreports.errors import ConfigError


# A Wednesday.
TODAY = date(2013, 2, 13)


@pytest.mark.parametrize(
    ("name", "start", "end"),
    [
        ("TODAY", date(2013, 2, 13), date(2013, 2, 13)),
        ("YESTERDAY", date(2013, 2, 12), date(2013, 2, 12)),
        ("LAST_7_DAYS", date(2013, 2, 6), date(2013, 2, 12)),
        ("LAST_14_DAYS", date(2013, 1, 30), date(2013, 2, 12)),
        ("LAST_30_DAYS", date(2013, 1, 14), date(2013, 2, 12)),
        ("LAST_WEEK", date(2013, 2, 4), date(2013, 2, 10)),
        ("LAST_BUSINESS_WEEK", date(2013, 2, 4), date(2013, 2, 8)),
        ("LAST_WEEK_SUN_SAT", date(2013, 2, 3), date(2013, 2, 9)),
        ("THIS_WEEK_MON_TODAY", date(2013, 2, 11), date(2013, 2, 13)),
        ("THIS_WEEK_SUN_TODAY", date(2013, 2, 10), date(2013, 2, 13)),
        ("THIS_MONTH", date(2013, 2, 1), date(2013, 2, 13)),
        ("LAST_MONTH", date(2013, 1, 1), date(2013, 1, 31)),
    ],
)
def test_named_ranges_resolve_to_dates(name: str, start: date, end: date) -> None:
    date_range = named_range(name, today=TODAY)

    assert (date_range.start, date_range.end) == (start, end)
    assert date_range.label == name
    assert not date_range.is_custom


def test_every_named_range_resolves() -> None:
    for name in NAMED_RANGES:
        date_range = named_range(name, today=TODAY)
        assert date_range.start <= date_range.end


def test_custom_range_from_cli_dates() -> None:
    date_range = custom_range("20130101", "20130131")

    assert date_range.is_custom
    assert date_range.label == "20130101-20130131"


@pytest.mark.parametrize(("start", "end"), [("2013-01-01", "20130131"), ("20130132", "20130201"), ("20130201", "20130101")])
def test_invalid_custom_ranges(start: str, end: str) -> None:
    with pytest.raises(ConfigError):
        custom_range(start, end)


def test_unknown_named_range() -> None:
    with pytest.raises(ConfigError):
        named_range("ALL_TIME", today=TODAY)
