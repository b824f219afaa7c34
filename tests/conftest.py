from collections.abc import Callable, Generator
from dataclasses import replace
from pathlib import Path
import threading

import pytest
from sqlalchemy.orm import Session, sessionmaker

from adreports.config import Settings
from adreports.database import build_session_factory
from adreports.fetcher import ReportDownloadError, ReportFetcher
from adreports.orchestrator import ReportRunner
from adreports.persistence import EntityPersister, SqlEntityPersister


NEGATIVE_KEYWORDS_CSV = """CampaignId,Id,KeywordMatchType,KeywordText,IsNegative
116981433,11533780,Broad,gratuite,true
116996313,11679830,Broad,gratuit,true
"""

ACCOUNT_PERFORMANCE_CSV = """AccountDescriptiveName,AccountCurrencyCode,Month,Clicks,Impressions,Cost,Ctr,AverageCpc,Conversions,SearchImpressionShare
Acme Shoes,EUR,2013-01-01,120,4500,35120000,2.67%,292667,4,< 10%
"""


class FakeReportClient:
    def __init__(
        self,
        reports: dict[tuple[int, str], str] | None = None,
        failures: dict[tuple[int, str], list[Exception]] | None = None,
        accounts: list[int] | None = None,
        on_download: Callable[[int, str], None] | None = None,
    ) -> None:
        self.reports = reports or {}
        self.failures = {key: list(errors) for key, errors in (failures or {}).items()}
        self.accounts = accounts or []
        self.on_download = on_download
        self.calls: list[tuple[int, str]] = []
        self._lock = threading.Lock()

    def download_report(self, account_id: int, request: dict[str, object]) -> list[str]:
        key = (account_id, str(request["report_type"]))
        with self._lock:
            self.calls.append(key)
            pending = self.failures.get(key)
            error = pending.pop(0) if pending else None
        if self.on_download:
            self.on_download(*key)
        if error is not None:
            raise error
        if key not in self.reports:
            raise ReportDownloadError(404, f"no report for {key}")
        return self.reports[key].splitlines()

    def list_accounts(self, manager_account_id: int | None) -> list[int]:
        return list(self.accounts)

    def calls_for(self, account_id: int, report_type: str) -> int:
        return self.calls.count((account_id, report_type))


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "reports").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="adreports",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        log_file="",
        report_types=("CAMPAIGN_NEGATIVE_KEYWORDS_PERFORMANCE_REPORT",),
        report_source_dir=str(temp_workspace / "reports"),
        concurrency=2,
        max_task_attempts=3,
        retry_backoff_seconds=0,
        persist_chunk_size=1,
        max_persist_retries=1,
        persist_backoff_seconds=0,
        max_failure_rate=0.5,
        row_error_policy="skip",
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def sql_persister(session_factory: sessionmaker[Session]) -> SqlEntityPersister:
    return SqlEntityPersister(session_factory)


@pytest.fixture()
def make_runner(
    test_settings: Settings,
    session_factory: sessionmaker[Session],
    sql_persister: SqlEntityPersister,
) -> Generator[Callable[..., ReportRunner], None, None]:
    def factory(
        client: FakeReportClient,
        *,
        persister: EntityPersister | None = None,
        **overrides: object,
    ) -> ReportRunner:
        settings = replace(test_settings, **overrides)
        return ReportRunner(settings, ReportFetcher(client), persister if persister is not None else sql_persister, session_factory)

    yield factory
