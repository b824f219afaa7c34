from collections.abc import Iterable, Iterator
import logging
from pathlib import Path
from typing import Protocol

import requests

from adreports.errors import FetchError
from adreports.schemas import ReportDefinition


logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
RATE_LIMIT_MARKER = "RateExceeded"


class ReportDownloadError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ReportClient(Protocol):
    def download_report(self, account_id: int, request: dict[str, object]) -> Iterable[str]: ...

    def list_accounts(self, manager_account_id: int | None) -> list[int]: ...


def build_report_request(definition: ReportDefinition) -> dict[str, object]:
    if not definition.columns:
        raise FetchError(f"report definition for {definition.report_type} selects no columns", transient=False)

    date_range = definition.date_range
    if date_range.is_custom:
        during = f"{date_range.start:%Y%m%d},{date_range.end:%Y%m%d}"
    else:
        during = date_range.mode

    return {
        "report_type": definition.report_type,
        "query": f"SELECT {', '.join(definition.columns)} FROM {definition.report_type} DURING {during}",
        "format": "CSV",
        "skip_report_header": True,
        "skip_report_summary": True,
    }


def classify_error(exc: Exception) -> FetchError:
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, ReportDownloadError):
        transient = exc.status_code in TRANSIENT_STATUS_CODES or RATE_LIMIT_MARKER in exc.message
        return FetchError(str(exc), transient=transient, status_code=exc.status_code)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError)):
        return FetchError(f"network error: {exc}", transient=True)
    if isinstance(exc, requests.RequestException):
        return FetchError(f"request failed: {exc}", transient=False)
    return FetchError(f"report source error: {exc}", transient=False)


class ReportFetcher:
    def __init__(self, client: ReportClient) -> None:
        self.client = client

    def fetch(self, account_id: int, definition: ReportDefinition) -> Iterator[str]:
        request = build_report_request(definition)
        logger.debug(
            "requesting report",
            extra={"account_id": account_id, "report_type": definition.report_type, "query": request["query"]},
        )
        try:
            lines = self.client.download_report(account_id, request)
        except (ReportDownloadError, requests.RequestException, OSError) as exc:
            raise classify_error(exc) from exc
        return self._stream(lines)

    def _stream(self, lines: Iterable[str]) -> Iterator[str]:
        # Errors raised while the body is still downloading are classified too.
        try:
            yield from lines
        except (ReportDownloadError, requests.RequestException, OSError) as exc:
            raise classify_error(exc) from exc


class HttpReportClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        developer_token: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 300.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.developer_token = developer_token
        self.timeout = timeout
        self._session = session or requests.Session()

    def _headers(self, customer_id: int | None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "developerToken": self.developer_token,
        }
        if customer_id is not None:
            headers["clientCustomerId"] = str(customer_id)
        return headers

    def download_report(self, account_id: int, request: dict[str, object]) -> Iterator[str]:
        headers = self._headers(account_id)
        headers["skipReportHeader"] = str(bool(request.get("skip_report_header"))).lower()
        headers["skipReportSummary"] = str(bool(request.get("skip_report_summary"))).lower()

        response = self._session.post(
            f"{self.base_url}/reportdownload",
            headers=headers,
            data={"__rdquery": request["query"], "__fmt": request["format"]},
            stream=True,
            timeout=self.timeout,
        )
        if response.status_code != 200:
            body = response.text[:500]
            response.close()
            raise ReportDownloadError(response.status_code, body)
        return self._iter_body(response)

    @staticmethod
    def _iter_body(response: requests.Response) -> Iterator[str]:
        if response.encoding is None:
            response.encoding = "utf-8"
        with response:
            for line in response.iter_lines(decode_unicode=True):
                if line is not None:
                    yield line

    def list_accounts(self, manager_account_id: int | None) -> list[int]:
        response = self._session.get(
            f"{self.base_url}/managedcustomers",
            headers=self._headers(manager_account_id),
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise ReportDownloadError(response.status_code, response.text[:500])

        entries = response.json().get("entries", [])
        # Manager accounts have no reports of their own.
        return sorted(int(entry["customerId"]) for entry in entries if not entry.get("canManageClients", False))


class LocalReportClient:
    """Replays previously downloaded reports laid out as ``<root>/<account id>/<REPORT_TYPE>.csv``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def download_report(self, account_id: int, request: dict[str, object]) -> Iterator[str]:
        path = self.root / str(account_id) / f"{request['report_type']}.csv"
        if not path.is_file():
            raise ReportDownloadError(404, f"no report file at {path}")
        return self._iter_file(path)

    @staticmethod
    def _iter_file(path: Path) -> Iterator[str]:
        with path.open("r", encoding="utf-8-sig", newline="") as infile:
            yield from infile

    def list_accounts(self, manager_account_id: int | None = None) -> list[int]:
        if not self.root.is_dir():
            return []
        return sorted(int(child.name) for child in self.root.iterdir() if child.is_dir() and child.name.isdigit())
