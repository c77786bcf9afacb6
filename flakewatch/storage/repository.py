"""Repository interfaces injected into the engine components.

The engine never holds process-lifetime state of its own; everything it reads
or mutates goes through one of these protocols. ``flakewatch.storage.sqlite``
implements all of them; ``flakewatch.storage.http_source`` implements
``ExecutionRecordSource`` against a remote ingestion service.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from flakewatch.engine.models import (
    ExecutionRecord,
    QuarantineEvent,
    QuarantineRecord,
    ResolutionRecord,
)


class ExecutionRecordSource(Protocol):
    def fetch_records(
        self,
        project_id: str,
        *,
        test_names: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit_per_test: int | None = None,
    ) -> list[ExecutionRecord]:
        """Return records for a project, newest first.

        ``start`` and ``end`` are both inclusive. An empty or None
        ``test_names`` means every test in the project. ``limit_per_test`` keeps
        only the newest N records of each test. Implementations raise
        DataSourceUnavailableError when the backing store cannot be read.
        """
        ...


class QuarantineRepository(Protocol):
    def get_quarantine(self, test_id: str) -> QuarantineRecord | None: ...

    def list_quarantines(self, project_id: str) -> list[QuarantineRecord]: ...

    def save_quarantine(self, record: QuarantineRecord, event: QuarantineEvent) -> None:
        """Persist the new state and append its audit event atomically."""
        ...

    def get_quarantine_events(
        self,
        *,
        test_id: str | None = None,
        project_id: str | None = None,
    ) -> list[QuarantineEvent]:
        """Audit trail, oldest first."""
        ...


class ResolutionRepository(Protocol):
    def save_resolution(self, record: ResolutionRecord) -> None: ...

    def get_resolution(self, resolution_id: str) -> ResolutionRecord | None: ...

    def complete_verification(self, record: ResolutionRecord) -> bool:
        """Write a verification verdict only if the stored record is still pending.

        Returns False when another verifier already finalized it.
        """
        ...

    def list_due_resolutions(self, now: datetime) -> list[ResolutionRecord]:
        """Pending resolutions whose ``due_at`` is at or before ``now``."""
        ...

    def list_resolutions(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ResolutionRecord]:
        """Resolutions recorded within [start, end], oldest first."""
        ...
