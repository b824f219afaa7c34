from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path

from dotenv import dotenv_values, load_dotenv

from adreports.entities import SCHEMAS
from adreports.errors import ConfigError


load_dotenv()

ROW_ERROR_POLICIES = ("skip", "abort")
ENTITY_STORES = ("sql", "memory")


@dataclass(frozen=True)
class Settings:
    app_name: str = "adreports"
    database_url: str = "sqlite:///./adreports.db"
    log_level: str = "INFO"
    log_file: str = "adreports.log"
    manager_account_id: int | None = None
    report_types: tuple[str, ...] = ("ACCOUNT_PERFORMANCE_REPORT",)
    api_base_url: str = ""
    api_access_token: str = ""
    developer_token: str = ""
    report_source_dir: str = ""
    entity_store: str = "sql"
    concurrency: int = 4
    max_task_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    retry_backoff_max_seconds: float = 60.0
    persist_chunk_size: int = 500
    max_persist_retries: int = 2
    persist_backoff_seconds: float = 0.5
    max_failure_rate: float = 0.1
    row_error_policy: str = "skip"
    pdf_converter_command: str = ""
    schedule_hour_utc: int = 2
    schedule_minute_utc: int = 0
    schedule_date_range: str = "YESTERDAY"


def _get(values: Mapping[str, str | None], key: str, default: str) -> str:
    value = os.getenv(key)
    if value is None:
        value = values.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_int(values: Mapping[str, str | None], key: str, default: int, *, minimum: int | None = None) -> int:
    raw = _get(values, key, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_float(values: Mapping[str, str | None], key: str, default: float, *, minimum: float = 0.0) -> float:
    raw = _get(values, key, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_choice(values: Mapping[str, str | None], key: str, default: str, choices: tuple[str, ...]) -> str:
    value = _get(values, key, default).lower()
    if value not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return value


def parse_account_id(raw: str) -> int:
    cleaned = raw.strip().replace("-", "")
    if not cleaned.isdigit():
        raise ConfigError(f"invalid account id {raw!r}")
    return int(cleaned)


def load_settings(properties_path: str | Path | None = None) -> Settings:
    values: Mapping[str, str | None] = {}
    if properties_path is not None:
        path = Path(properties_path)
        if not path.is_file():
            raise ConfigError(f"properties file not found: {path}")
        values = dotenv_values(path)

    manager_raw = _get(values, "MANAGER_ACCOUNT_ID", "")
    report_types = tuple(
        item.strip().upper()
        for item in _get(values, "REPORT_TYPES", "ACCOUNT_PERFORMANCE_REPORT").split(",")
        if item.strip()
    )
    if not report_types:
        raise ConfigError("REPORT_TYPES must name at least one report type")
    unknown = [report_type for report_type in report_types if report_type not in SCHEMAS]
    if unknown:
        raise ConfigError(f"unsupported report type(s) in REPORT_TYPES: {', '.join(unknown)}")

    max_failure_rate = _get_float(values, "MAX_FAILURE_RATE", 0.1)
    if max_failure_rate > 1:
        raise ConfigError(f"MAX_FAILURE_RATE must be between 0 and 1, got {max_failure_rate}")

    return Settings(
        app_name=_get(values, "APP_NAME", "adreports"),
        database_url=_get(values, "DATABASE_URL", "sqlite:///./adreports.db"),
        log_level=_get(values, "LOG_LEVEL", "INFO"),
        log_file=_get(values, "LOG_FILE", "adreports.log"),
        manager_account_id=parse_account_id(manager_raw) if manager_raw else None,
        report_types=report_types,
        api_base_url=_get(values, "API_BASE_URL", ""),
        api_access_token=_get(values, "API_ACCESS_TOKEN", ""),
        developer_token=_get(values, "DEVELOPER_TOKEN", ""),
        report_source_dir=_get(values, "REPORT_SOURCE_DIR", ""),
        entity_store=_get_choice(values, "ENTITY_STORE", "sql", ENTITY_STORES),
        concurrency=_get_int(values, "CONCURRENCY", 4, minimum=1),
        max_task_attempts=_get_int(values, "MAX_TASK_ATTEMPTS", 3, minimum=1),
        retry_backoff_seconds=_get_float(values, "RETRY_BACKOFF_SECONDS", 2.0),
        retry_backoff_max_seconds=_get_float(values, "RETRY_BACKOFF_MAX_SECONDS", 60.0),
        persist_chunk_size=_get_int(values, "PERSIST_CHUNK_SIZE", 500, minimum=1),
        max_persist_retries=_get_int(values, "MAX_PERSIST_RETRIES", 2, minimum=0),
        persist_backoff_seconds=_get_float(values, "PERSIST_BACKOFF_SECONDS", 0.5),
        max_failure_rate=max_failure_rate,
        row_error_policy=_get_choice(values, "ROW_ERROR_POLICY", "skip", ROW_ERROR_POLICIES),
        pdf_converter_command=_get(values, "PDF_CONVERTER_COMMAND", ""),
        schedule_hour_utc=_get_int(values, "SCHEDULE_HOUR_UTC", 2, minimum=0),
        schedule_minute_utc=_get_int(values, "SCHEDULE_MINUTE_UTC", 0, minimum=0),
        schedule_date_range=_get(values, "SCHEDULE_DATE_RANGE", "YESTERDAY").upper(),
    )
