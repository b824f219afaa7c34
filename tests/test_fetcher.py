from pathlib import Path

import pytest
import requests

from adreports.dates import custom_range, named_range
from adreports.entities import build_definition
from adreports.errors import FetchError
from adreports.fetcher import (
    HttpReportClient,
    LocalReportClient,
    ReportDownloadError,
    ReportFetcher,
    build_report_request,
    classify_error,
)
from adreports.schemas import ReportDefinition

from conftest import NEGATIVE_KEYWORDS_CSV, FakeReportClient


NEGATIVE = "CAMPAIGN_NEGATIVE_KEYWORDS_PERFORMANCE_REPORT"


class FakeResponse:
    def __init__(self, status_code: int, body: str = "", payload: dict | None = None) -> None:
        self.status_code = status_code
        self.text = body
        self.encoding = None
        self.payload = payload or {}
        self.closed = False

    def iter_lines(self, decode_unicode: bool = False):
        yield from self.text.splitlines()

    def json(self) -> dict:
        return self.payload

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.requests: list[tuple[str, str, dict]] = []

    def post(self, url: str, **kwargs) -> FakeResponse:
        self.requests.append(("POST", url, kwargs))
        return self.response

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.requests.append(("GET", url, kwargs))
        return self.response


def test_custom_range_request_lists_columns_and_dates() -> None:
    definition = build_definition(NEGATIVE, custom_range("20130101", "20130131"))

    request = build_report_request(definition)

    assert request["query"] == (
        "SELECT CampaignId, Id, KeywordMatchType, KeywordText, IsNegative "
        "FROM CAMPAIGN_NEGATIVE_KEYWORDS_PERFORMANCE_REPORT DURING 20130101,20130131"
    )
    assert request["format"] == "CSV"
    assert request["skip_report_header"] is True
    assert request["skip_report_summary"] is True


def test_named_range_request_uses_range_name() -> None:
    definition = build_definition(NEGATIVE, named_range("LAST_7_DAYS"))

    assert build_report_request(definition)["query"].endswith("DURING LAST_7_DAYS")


def test_definition_without_columns_is_rejected() -> None:
    definition = ReportDefinition(NEGATIVE, custom_range("20130101", "20130131"), columns=())

    with pytest.raises(FetchError) as excinfo:
        build_report_request(definition)

    assert excinfo.value.transient is False


@pytest.mark.parametrize(
    ("error", "transient"),
    [
        (ReportDownloadError(429, "Too Many Requests"), True),
        (ReportDownloadError(500, "Internal Server Error"), True),
        (ReportDownloadError(400, "RateExceededError.RATE_EXCEEDED"), True),
        (ReportDownloadError(400, "ReportDefinitionError.INVALID_FIELD_NAME"), False),
        (ReportDownloadError(401, "AuthenticationError.OAUTH_TOKEN_INVALID"), False),
        (requests.ConnectionError("connection refused"), True),
        (requests.Timeout("read timed out"), True),
        (requests.HTTPError("bad request"), False),
        (ValueError("unexpected"), False),
    ],
)
def test_classify_error(error: Exception, transient: bool) -> None:
    assert classify_error(error).transient is transient


def test_fetcher_classifies_errors_raised_while_streaming() -> None:
    def broken_body(account_id, request):
        yield "CampaignId,Id,KeywordMatchType,KeywordText,IsNegative"
        raise requests.exceptions.ChunkedEncodingError("connection broken")

    client = FakeReportClient()
    client.download_report = broken_body
    definition = build_definition(NEGATIVE, custom_range("20130101", "20130131"))

    lines = ReportFetcher(client).fetch(101, definition)

    assert next(lines).startswith("CampaignId")
    with pytest.raises(FetchError) as excinfo:
        next(lines)
    assert excinfo.value.transient is True


def test_fetcher_classifies_eager_download_errors() -> None:
    client = FakeReportClient()
    definition = build_definition(NEGATIVE, custom_range("20130101", "20130131"))

    with pytest.raises(FetchError) as excinfo:
        ReportFetcher(client).fetch(101, definition)

    assert excinfo.value.status_code == 404
    assert excinfo.value.transient is False


def test_http_client_posts_query_and_streams_lines() -> None:
    session = FakeSession(FakeResponse(200, NEGATIVE_KEYWORDS_CSV))
    client = HttpReportClient("https://ads.example.test/api/", "token-1", "dev-1", session=session, timeout=5)
    request = build_report_request(build_definition(NEGATIVE, custom_range("20130101", "20130131")))

    lines = list(client.download_report(1234567890, request))

    assert lines[0] == "CampaignId,Id,KeywordMatchType,KeywordText,IsNegative"
    assert len(lines) == 3
    method, url, kwargs = session.requests[0]
    assert method == "POST"
    assert url == "https://ads.example.test/api/reportdownload"
    assert kwargs["headers"]["Authorization"] == "Bearer token-1"
    assert kwargs["headers"]["clientCustomerId"] == "1234567890"
    assert kwargs["headers"]["skipReportSummary"] == "true"
    assert kwargs["data"]["__fmt"] == "CSV"
    assert kwargs["stream"] is True
    assert session.response.closed is True


def test_http_client_raises_download_error_on_failure_status() -> None:
    session = FakeSession(FakeResponse(503, "Service Unavailable"))
    client = HttpReportClient("https://ads.example.test/api", "token-1", "dev-1", session=session)
    request = build_report_request(build_definition(NEGATIVE, custom_range("20130101", "20130131")))

    with pytest.raises(ReportDownloadError) as excinfo:
        client.download_report(1234567890, request)

    assert excinfo.value.status_code == 503
    assert session.response.closed is True


def test_http_client_lists_only_client_accounts() -> None:
    payload = {
        "entries": [
            {"customerId": 300, "canManageClients": False},
            {"customerId": 100, "canManageClients": True},
            {"customerId": 200},
        ]
    }
    session = FakeSession(FakeResponse(200, payload=payload))
    client = HttpReportClient("https://ads.example.test/api", "token-1", "dev-1", session=session)

    assert client.list_accounts(100) == [200, 300]
    assert session.requests[0][2]["headers"]["clientCustomerId"] == "100"


def test_local_client_reads_account_report_files(tmp_path: Path) -> None:
    account_dir = tmp_path / "1234567890"
    account_dir.mkdir()
    (account_dir / f"{NEGATIVE}.csv").write_text("\ufeff" + NEGATIVE_KEYWORDS_CSV, encoding="utf-8")
    (tmp_path / "notes").mkdir()
    client = LocalReportClient(tmp_path)

    lines = list(client.download_report(1234567890, {"report_type": NEGATIVE}))

    assert lines[0].startswith("CampaignId,")
    assert client.list_accounts() == [1234567890]
    with pytest.raises(ReportDownloadError) as excinfo:
        client.download_report(42, {"report_type": NEGATIVE})
    assert excinfo.value.status_code == 404
