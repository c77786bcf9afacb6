"""Resolution tracking: records remediation actions and when they fall due.

A resolution is verified once its post-fix window has elapsed. The due time is
persisted on the record (``due_at``) rather than held in a timer, so a restart
loses nothing: the reconciliation scan picks up anything pending and due.
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from flakewatch.engine.models import (
    ResolutionRecord,
    ResolutionRequest,
    ResolutionStrategy,
)
from flakewatch.engine.quarantine import QuarantineStateMachine
from flakewatch.observability.metrics import RESOLUTIONS_RECORDED_TOTAL
from flakewatch.storage.repository import ResolutionRepository

logger = logging.getLogger(__name__)

DEFAULT_VERIFICATION_WINDOW_DAYS = 7


class ResolutionTracker:
    def __init__(
        self,
        repository: ResolutionRepository,
        *,
        window_days: int = DEFAULT_VERIFICATION_WINDOW_DAYS,
        quarantine: QuarantineStateMachine | None = None,
    ) -> None:
        self.repository = repository
        self.window_days = window_days
        self.quarantine = quarantine

    def record_resolution(
        self,
        pattern_id: str,
        organization_id: str,
        actor: str,
        request: ResolutionRequest,
        now: datetime | None = None,
    ) -> ResolutionRecord:
        """Record a fix against a detected pattern and schedule its verification.

        Quick fixes are always flagged for follow-up regardless of how their
        verification later turns out. When the fix names a project, quarantined
        tests it covers move to monitoring.
        """
        resolved_at = now or datetime.now(UTC)
        record = ResolutionRecord(
            id=f"resolution-{uuid4().hex}",
            pattern_id=pattern_id,
            organization_id=organization_id,
            project_id=request.project_id,
            resolved_by=actor,
            resolution_notes=request.resolution_notes,
            actions_taken=request.actions_taken,
            resolution_strategy=request.resolution_strategy,
            pattern_type=request.pattern_type,
            estimated_effort=request.estimated_effort,
            actual_effort_hours=request.actual_effort_hours,
            affected_tests=request.affected_tests,
            resolved_at=resolved_at,
            due_at=resolved_at + timedelta(days=self.window_days),
            follow_up_required=request.resolution_strategy == ResolutionStrategy.QUICK_FIX,
            related_patterns=request.related_patterns,
        )
        self.repository.save_resolution(record)
        RESOLUTIONS_RECORDED_TOTAL.labels(strategy=record.resolution_strategy.value).inc()

        if self.quarantine is not None and record.project_id:
            self.quarantine.claim_fix(
                record.project_id,
                record.affected_tests,
                resolution_id=record.id,
                reason=f"Fix recorded ({record.id}) - monitoring for effectiveness",
                now=resolved_at,
            )

        logger.info(
            "Pattern resolution recorded: %s for pattern %s, verification due %s",
            record.id,
            pattern_id,
            record.due_at.isoformat(),
        )
        return record

    def get(self, resolution_id: str) -> ResolutionRecord | None:
        return self.repository.get_resolution(resolution_id)

    def due_for_verification(self, now: datetime | None = None) -> list[ResolutionRecord]:
        """Pending resolutions whose verification window has elapsed."""
        return self.repository.list_due_resolutions(now or datetime.now(UTC))
