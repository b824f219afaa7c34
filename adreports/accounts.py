import logging
from pathlib import Path

from adreports.config import Settings, parse_account_id
from adreports.errors import ConfigError
from adreports.fetcher import ReportClient


logger = logging.getLogger(__name__)


def read_account_ids_file(path: str | Path) -> set[int]:
    accounts_path = Path(path)
    if not accounts_path.is_file():
        raise ConfigError(f"accounts file not found: {accounts_path}")

    logger.info("using accounts file", extra={"path": str(accounts_path)})
    account_ids: set[int] = set()
    with accounts_path.open("r", encoding="utf-8") as infile:
        for line in infile:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            account_ids.add(parse_account_id(line))
    logger.debug("account ids to be queried", extra={"account_ids": sorted(account_ids)})
    return account_ids


def resolve_account_ids(client: ReportClient, settings: Settings, accounts_file: str | None = None) -> list[int]:
    if accounts_file:
        return sorted(read_account_ids_file(accounts_file))

    account_ids = client.list_accounts(settings.manager_account_id)
    logger.info(
        "retrieved accounts under manager",
        extra={"manager_account_id": settings.manager_account_id, "accounts": len(account_ids)},
    )
    return account_ids
