"""Execution-record source backed by a remote ingestion service's HTTP API.

Used when EXECUTION_SOURCE_URL is set. Any transport, HTTP status or payload
problem surfaces as DataSourceUnavailableError so verification can abort and
leave the resolution pending for the next reconciliation scan.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

import httpx
from pydantic import ValidationError

from flakewatch.engine.errors import DataSourceUnavailableError
from flakewatch.engine.models import ExecutionRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class HttpExecutionRecordSource:
    """Fetches normalized execution records from ``{base_url}/projects/{id}/execution-records``."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def fetch_records(
        self,
        project_id: str,
        *,
        test_names: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit_per_test: int | None = None,
    ) -> list[ExecutionRecord]:
        params: list[tuple[str, str]] = [("test_name", name) for name in test_names or []]
        if start is not None:
            params.append(("start", _format_time(start)))
        if end is not None:
            params.append(("end", _format_time(end)))
        if limit_per_test is not None:
            params.append(("limit_per_test", str(limit_per_test)))

        url = f"{self.base_url}/projects/{project_id}/execution-records"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.get(url, params=params, headers=self._headers())
                _ = resp.raise_for_status()
                body: object = resp.json()
        except httpx.TimeoutException as exc:
            msg = f"Execution record source timed out after {self.timeout}s"
            raise DataSourceUnavailableError(msg) from exc
        except httpx.HTTPStatusError as exc:
            msg = f"Execution record source returned HTTP {exc.response.status_code}"
            raise DataSourceUnavailableError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Cannot connect to execution record source at {self.base_url}: {exc}"
            raise DataSourceUnavailableError(msg) from exc
        except ValueError as exc:
            msg = "Execution record source returned invalid JSON"
            raise DataSourceUnavailableError(msg) from exc

        raw_records = body.get("records") if isinstance(body, dict) else None
        if not isinstance(raw_records, list):
            msg = "Execution record source response is missing a 'records' list"
            raise DataSourceUnavailableError(msg)

        try:
            records = [ExecutionRecord.model_validate(item) for item in raw_records]
        except ValidationError as exc:
            msg = f"Execution record source returned malformed records: {exc.error_count()} error(s)"
            raise DataSourceUnavailableError(msg) from exc

        logger.debug("Fetched %d execution records for project %s", len(records), project_id)
        records.sort(key=lambda r: r.timestamp, reverse=True)
        if limit_per_test is not None:
            # The service may not honor the cap; enforce it here too
            seen: dict[str, int] = {}
            capped: list[ExecutionRecord] = []
            for record in records:
                seen[record.test_name] = seen.get(record.test_name, 0) + 1
                if seen[record.test_name] <= limit_per_test:
                    capped.append(record)
            records = capped
        return records
