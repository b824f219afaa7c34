from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from adreports.db_models import ReportEntityRecord
from adreports.entities import AccountPerformance, CampaignNegativeKeyword, CampaignPerformance
from adreports.errors import ConfigError, PersistError
from adreports.persistence import MemoryEntityPersister, SqlEntityPersister, build_persister


JANUARY_START = date(2013, 1, 1)
JANUARY_END = date(2013, 1, 31)


def negative_keyword(text: str, keyword_id: int = 11533780) -> CampaignNegativeKeyword:
    return CampaignNegativeKeyword(
        account_id=1234567890,
        date_start=JANUARY_START,
        date_end=JANUARY_END,
        campaign_id=116981433,
        keyword_id=keyword_id,
        match_type="Broad",
        text=text,
        negative=True,
    )


def campaign_day(day: int, clicks: int) -> CampaignPerformance:
    return CampaignPerformance(
        account_id=1234567890,
        date_start=JANUARY_START,
        date_end=JANUARY_END,
        campaign_id=116981433,
        campaign_name="Brand",
        status="enabled",
        day=date(2013, 1, day),
        clicks=clicks,
        impressions=clicks * 10,
        cost=Decimal("1.25"),
    )


class BrokenSession:
    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))


@pytest.fixture(params=["sql", "memory"])
def persister(request, sql_persister: SqlEntityPersister):
    if request.param == "sql":
        return sql_persister
    return MemoryEntityPersister()


def test_saving_same_natural_key_keeps_one_record_with_latest_values(persister) -> None:
    persister.save([negative_keyword("gratuite")])
    persister.save([negative_keyword("gratuit")])

    stored = persister.query(CampaignNegativeKeyword.report_type, 1234567890, JANUARY_START, JANUARY_END)

    assert len(stored) == 1
    assert stored[0].text == "gratuit"


def test_last_entity_wins_within_one_chunk(persister) -> None:
    saved = persister.save([negative_keyword("first"), negative_keyword("second"), negative_keyword("other", 42)])

    stored = persister.query(CampaignNegativeKeyword.report_type, 1234567890, JANUARY_START, JANUARY_END)

    assert saved == 2
    assert sorted(entity.text for entity in stored) == ["other", "second"]


def test_query_filters_by_report_date_and_orders_results(persister) -> None:
    persister.save([campaign_day(20, 5), campaign_day(3, 7), campaign_day(15, 1)])

    stored = persister.query(CampaignPerformance.report_type, 1234567890, date(2013, 1, 1), date(2013, 1, 16))

    assert [entity.day for entity in stored] == [date(2013, 1, 3), date(2013, 1, 15)]
    assert persister.query(CampaignPerformance.report_type, 999, JANUARY_START, JANUARY_END) == []


def test_sql_records_keep_typed_values(sql_persister: SqlEntityPersister, session_factory) -> None:
    entity = AccountPerformance(
        account_id=1234567890,
        date_start=JANUARY_START,
        date_end=JANUARY_END,
        account_name="Acme Shoes",
        currency_code="EUR",
        month=JANUARY_START,
        clicks=120,
        impressions=4500,
        cost=Decimal("35.12"),
        ctr=Decimal("2.67"),
    )
    sql_persister.save([entity])

    stored = sql_persister.query(AccountPerformance.report_type, 1234567890, JANUARY_START, JANUARY_END)

    assert stored == [entity]
    with session_factory() as db:
        record = db.execute(select(ReportEntityRecord)).scalar_one()
        assert record.dimension_key == "-"
        assert record.report_date == JANUARY_START


def test_locked_database_is_a_transient_persist_error() -> None:
    persister = SqlEntityPersister(lambda: BrokenSession())

    with pytest.raises(PersistError) as excinfo:
        persister.save([negative_keyword("gratuite")])

    assert excinfo.value.transient is True


def test_build_persister_rejects_unknown_store(session_factory) -> None:
    assert isinstance(build_persister("memory", session_factory), MemoryEntityPersister)
    with pytest.raises(ConfigError):
        build_persister("mongodb", session_factory)
