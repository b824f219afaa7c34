from sqlalchemy.orm import Session, sessionmaker

from adreports.accounts import resolve_account_ids
from adreports.config import Settings
from adreports.entities import build_definition
from adreports.errors import ConfigError
from adreports.fetcher import HttpReportClient, LocalReportClient, ReportClient, ReportFetcher
from adreports.orchestrator import ReportRunner
from adreports.persistence import build_persister
from adreports.schemas import DateRange, ReportDefinition


def build_client(settings: Settings) -> ReportClient:
    if settings.report_source_dir:
        return LocalReportClient(settings.report_source_dir)

    missing = [
        key
        for key, value in (
            ("API_BASE_URL", settings.api_base_url),
            ("API_ACCESS_TOKEN", settings.api_access_token),
            ("DEVELOPER_TOKEN", settings.developer_token),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"missing API settings: {', '.join(missing)} (or set REPORT_SOURCE_DIR)")
    return HttpReportClient(settings.api_base_url, settings.api_access_token, settings.developer_token)


def build_definitions(settings: Settings, date_range: DateRange) -> list[ReportDefinition]:
    return [build_definition(report_type, date_range) for report_type in settings.report_types]


def prepare_run(
    settings: Settings,
    session_factory: sessionmaker[Session],
    date_range: DateRange,
    *,
    accounts_file: str | None = None,
    client: ReportClient | None = None,
) -> tuple[ReportRunner, list[int], list[ReportDefinition]]:
    client = client or build_client(settings)
    definitions = build_definitions(settings, date_range)
    account_ids = resolve_account_ids(client, settings, accounts_file)
    persister = build_persister(settings.entity_store, session_factory)
    runner = ReportRunner(settings, ReportFetcher(client), persister, session_factory)
    return runner, account_ids, definitions
