"""Unit tests for the HTTP execution-record source, mocked with respx."""

from datetime import UTC, datetime

import httpx
import pytest
import respx

from flakewatch.engine.errors import DataSourceUnavailableError
from flakewatch.engine.models import TestStatus
from flakewatch.storage.http_source import HttpExecutionRecordSource

BASE_URL = "http://ingest.test:8080"
RECORDS_URL = f"{BASE_URL}/projects/web/execution-records"


def _payload(*timestamps: str) -> dict[str, object]:
    return {
        "records": [
            {
                "project_id": "web",
                "test_name": "test_login",
                "status": "failed" if i % 2 else "passed",
                "duration_millis": 100 + i,
                "timestamp": ts,
            }
            for i, ts in enumerate(timestamps)
        ]
    }


class TestFetchRecords:
    @respx.mock
    def test_parses_and_sorts_newest_first(self) -> None:
        respx.get(RECORDS_URL).mock(
            return_value=httpx.Response(200, json=_payload("2026-03-01T10:00:00Z", "2026-03-02T10:00:00Z"))
        )
        records = HttpExecutionRecordSource(BASE_URL).fetch_records("web")
        assert len(records) == 2
        assert records[0].timestamp == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
        assert records[0].status == TestStatus.FAILED

    @respx.mock
    def test_sends_filters_and_token(self) -> None:
        route = respx.get(RECORDS_URL).mock(return_value=httpx.Response(200, json={"records": []}))
        HttpExecutionRecordSource(f"{BASE_URL}/", token="secret").fetch_records(
            "web",
            test_names=["a", "b"],
            start=datetime(2026, 3, 1, tzinfo=UTC),
            end=datetime(2026, 3, 8, tzinfo=UTC),
        )

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.url.params.get_list("test_name") == ["a", "b"]
        assert request.url.params["start"] == "2026-03-01T00:00:00+00:00"
        assert request.url.params["end"] == "2026-03-08T00:00:00+00:00"

    @respx.mock
    def test_no_token_no_auth_header(self) -> None:
        route = respx.get(RECORDS_URL).mock(return_value=httpx.Response(200, json={"records": []}))
        HttpExecutionRecordSource(BASE_URL).fetch_records("web")
        assert "Authorization" not in route.calls.last.request.headers


class TestFetchErrors:
    @respx.mock
    def test_http_error(self) -> None:
        respx.get(RECORDS_URL).mock(return_value=httpx.Response(500, text="oops"))
        with pytest.raises(DataSourceUnavailableError, match="HTTP 500"):
            HttpExecutionRecordSource(BASE_URL).fetch_records("web")

    @respx.mock
    def test_connection_error(self) -> None:
        respx.get(RECORDS_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(DataSourceUnavailableError, match="Cannot connect"):
            HttpExecutionRecordSource(BASE_URL).fetch_records("web")

    @respx.mock
    def test_timeout(self) -> None:
        respx.get(RECORDS_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(DataSourceUnavailableError, match="timed out"):
            HttpExecutionRecordSource(BASE_URL).fetch_records("web")

    @respx.mock
    def test_invalid_json(self) -> None:
        respx.get(RECORDS_URL).mock(return_value=httpx.Response(200, text="not json"))
        with pytest.raises(DataSourceUnavailableError, match="invalid JSON"):
            HttpExecutionRecordSource(BASE_URL).fetch_records("web")

    @respx.mock
    def test_missing_records_key(self) -> None:
        respx.get(RECORDS_URL).mock(return_value=httpx.Response(200, json={"items": []}))
        with pytest.raises(DataSourceUnavailableError, match="'records'"):
            HttpExecutionRecordSource(BASE_URL).fetch_records("web")

    @respx.mock
    def test_malformed_record(self) -> None:
        respx.get(RECORDS_URL).mock(
            return_value=httpx.Response(200, json={"records": [{"project_id": "web", "status": "maybe"}]})
        )
        with pytest.raises(DataSourceUnavailableError, match="malformed"):
            HttpExecutionRecordSource(BASE_URL).fetch_records("web")


class TestLimitPerTest:
    @respx.mock
    def test_sends_limit(self) -> None:
        route = respx.get(RECORDS_URL).mock(return_value=httpx.Response(200, json={"records": []}))
        HttpExecutionRecordSource(BASE_URL).fetch_records("web", limit_per_test=50)
        assert route.calls.last.request.url.params["limit_per_test"] == "50"

    @respx.mock
    def test_caps_when_service_ignores_limit(self) -> None:
        respx.get(RECORDS_URL).mock(
            return_value=httpx.Response(
                200,
                json=_payload("2026-03-01T10:00:00Z", "2026-03-02T10:00:00Z", "2026-03-03T10:00:00Z"),
            )
        )
        records = HttpExecutionRecordSource(BASE_URL).fetch_records("web", limit_per_test=2)
        assert [r.timestamp.day for r in records] == [3, 2]
