"""Quarantine lifecycle for flagged tests.

Tests move active -> quarantined -> monitoring -> resolved. A regression found
during verification sends monitoring back to quarantined, and a resolved test
that is flagged again re-enters quarantine.

``release`` and ``resolve`` (quarantined straight to resolved) are operator
overrides and are refused for the system actor. Every transition appends an
audit event; the current record is only ever replaced through ``transition``.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from flakewatch.engine.errors import InvalidTransitionError
from flakewatch.engine.models import (
    SYSTEM_ACTOR,
    FlakinessVerdict,
    QuarantineAction,
    QuarantineEvent,
    QuarantineRecord,
    QuarantineStats,
    QuarantineStatus,
    make_test_id,
)
from flakewatch.observability.metrics import QUARANTINE_TRANSITIONS_TOTAL
from flakewatch.storage.repository import QuarantineRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_GATE = 70.0

_TRANSITIONS: dict[tuple[QuarantineStatus, QuarantineAction], QuarantineStatus] = {
    (QuarantineStatus.ACTIVE, QuarantineAction.QUARANTINE): QuarantineStatus.QUARANTINED,
    (QuarantineStatus.RESOLVED, QuarantineAction.QUARANTINE): QuarantineStatus.QUARANTINED,
    (QuarantineStatus.QUARANTINED, QuarantineAction.RELEASE): QuarantineStatus.ACTIVE,
    (QuarantineStatus.QUARANTINED, QuarantineAction.CLAIM_FIX): QuarantineStatus.MONITORING,
    (QuarantineStatus.QUARANTINED, QuarantineAction.RESOLVE): QuarantineStatus.RESOLVED,
    (QuarantineStatus.MONITORING, QuarantineAction.CONFIRM_FIX): QuarantineStatus.RESOLVED,
    (QuarantineStatus.MONITORING, QuarantineAction.DETECT_REGRESSION): QuarantineStatus.QUARANTINED,
}

_OPERATOR_ONLY = frozenset({QuarantineAction.RELEASE, QuarantineAction.RESOLVE})

_DEFAULT_REASONS: dict[QuarantineAction, str] = {
    QuarantineAction.QUARANTINE: "Quarantined by operator",
    QuarantineAction.RELEASE: "Released from quarantine by operator",
    QuarantineAction.CLAIM_FIX: "Fix recorded - monitoring for effectiveness",
    QuarantineAction.CONFIRM_FIX: "Fix verified effective",
    QuarantineAction.DETECT_REGRESSION: "Regression detected after fix",
    QuarantineAction.RESOLVE: "Resolved by operator",
}


def _trigger(actor: str) -> str:
    return "auto" if actor == SYSTEM_ACTOR else "manual"


class QuarantineStateMachine:
    def __init__(
        self,
        repository: QuarantineRepository,
        confidence_gate: float = DEFAULT_CONFIDENCE_GATE,
    ) -> None:
        self.repository = repository
        self.confidence_gate = confidence_gate

    def get(self, test_id: str) -> QuarantineRecord | None:
        return self.repository.get_quarantine(test_id)

    def history(self, test_id: str) -> list[QuarantineEvent]:
        return self.repository.get_quarantine_events(test_id=test_id)

    def transition(
        self,
        test_id: str,
        action: QuarantineAction,
        actor: str,
        *,
        project_id: str | None = None,
        reason: str | None = None,
        resolution_id: str | None = None,
        now: datetime | None = None,
    ) -> QuarantineRecord:
        """Apply ``action`` to a test and record it in the audit trail.

        Tests with no stored record start out ``active``; ``project_id`` is then
        required to create one. ``resolution_id`` ties fix-related events to the
        resolution that caused them.

        Raises:
            InvalidTransitionError: If the action is not allowed from the current
                state, or is an operator override attempted by the system actor.
            ValueError: If the test is unknown and no project_id was given.
        """
        now = now or datetime.now(UTC)
        current = self.repository.get_quarantine(test_id)
        if current is None:
            if not project_id:
                msg = f"Unknown test '{test_id}': project_id is required to start tracking it"
                raise ValueError(msg)
            current = QuarantineRecord(test_id=test_id, project_id=project_id, updated_at=now)

        if action in _OPERATOR_ONLY and actor == SYSTEM_ACTOR:
            msg = f"Action '{action}' is an operator override and cannot be applied automatically"
            raise InvalidTransitionError(msg)

        target = _TRANSITIONS.get((current.status, action))
        if target is None:
            msg = f"Cannot apply '{action}' to test '{test_id}' in state '{current.status}'"
            raise InvalidTransitionError(msg)

        reason = reason or _DEFAULT_REASONS[action]
        updates: dict[str, object] = {"status": target, "reason": reason, "updated_at": now}
        if target == QuarantineStatus.QUARANTINED:
            updates["quarantined_at"] = now
            updates["quarantined_by"] = actor
        elif target == QuarantineStatus.ACTIVE:
            updates["quarantined_at"] = None
            updates["quarantined_by"] = None
        updated = current.model_copy(update=updates)

        event = QuarantineEvent(
            test_id=test_id,
            project_id=current.project_id,
            action=action,
            from_status=current.status,
            to_status=target,
            reason=reason,
            actor=actor,
            occurred_at=now,
            resolution_id=resolution_id,
        )
        self.repository.save_quarantine(updated, event)
        QUARANTINE_TRANSITIONS_TOTAL.labels(action=action.value, trigger=_trigger(actor)).inc()
        logger.info("Quarantine %s: %s -> %s by %s (%s)", test_id, current.status, target, actor, reason)
        return updated

    def evaluate_verdict(
        self,
        project_id: str,
        verdict: FlakinessVerdict,
        now: datetime | None = None,
    ) -> QuarantineRecord | None:
        """Quarantine a test automatically when its verdict clears the confidence gate.

        Returns the (possibly unchanged) record, or None when the test has never
        been tracked and the verdict does not warrant quarantine.
        """
        test_id = make_test_id(project_id, verdict.test_name)
        current = self.repository.get_quarantine(test_id)
        status = current.status if current else QuarantineStatus.ACTIVE

        if not verdict.is_flaky or verdict.confidence < self.confidence_gate:
            return current
        if status not in (QuarantineStatus.ACTIVE, QuarantineStatus.RESOLVED):
            return current

        reason = f"Flaky test detected ({verdict.confidence:.1f}% confidence): {'; '.join(verdict.reasons)}"
        return self.transition(
            test_id,
            QuarantineAction.QUARANTINE,
            SYSTEM_ACTOR,
            project_id=project_id,
            reason=reason,
            now=now,
        )

    def _tracked(self, project_id: str, test_names: Sequence[str]) -> list[QuarantineRecord]:
        if not test_names:
            return self.repository.list_quarantines(project_id)
        records = (self.repository.get_quarantine(make_test_id(project_id, name)) for name in test_names)
        return [r for r in records if r is not None]

    def _claimed_by(self, test_id: str) -> str | None:
        """Resolution id on the test's latest claim-fix event, if any."""
        claims = [e for e in self.history(test_id) if e.action == QuarantineAction.CLAIM_FIX]
        return claims[-1].resolution_id if claims else None

    def claim_fix(
        self,
        project_id: str,
        test_names: Sequence[str],
        *,
        resolution_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> list[QuarantineRecord]:
        """Move quarantined tests covered by a recorded fix into monitoring."""
        return [
            self.transition(
                r.test_id,
                QuarantineAction.CLAIM_FIX,
                SYSTEM_ACTOR,
                reason=reason,
                resolution_id=resolution_id,
                now=now,
            )
            for r in self._tracked(project_id, test_names)
            if r.status == QuarantineStatus.QUARANTINED
        ]

    def settle_fix(
        self,
        project_id: str,
        test_names: Sequence[str],
        *,
        resolution_id: str,
        regressed: bool,
        reason: str,
        now: datetime | None = None,
    ) -> list[QuarantineRecord]:
        """Close out monitoring for tests this resolution claimed.

        Tests being monitored under a different resolution are left alone, so a
        project-wide fix never decides the outcome of another fix's tests.
        """
        action = QuarantineAction.DETECT_REGRESSION if regressed else QuarantineAction.CONFIRM_FIX
        return [
            self.transition(r.test_id, action, SYSTEM_ACTOR, reason=reason, resolution_id=resolution_id, now=now)
            for r in self._tracked(project_id, test_names)
            if r.status == QuarantineStatus.MONITORING and self._claimed_by(r.test_id) == resolution_id
        ]

    def stats(self, project_id: str) -> QuarantineStats:
        """Summarize quarantine activity for a project from its audit trail."""
        events = self.repository.get_quarantine_events(project_id=project_id)
        current = self.repository.list_quarantines(project_id)

        entered = [e for e in events if e.action == QuarantineAction.QUARANTINE]
        auto_entered = sum(1 for e in entered if e.actor == SYSTEM_ACTOR)
        auto_released = sum(
            1
            for e in events
            if e.actor == SYSTEM_ACTOR
            and e.from_status == QuarantineStatus.QUARANTINED
            and e.to_status != QuarantineStatus.QUARANTINED
        )

        def _count(status: QuarantineStatus) -> int:
            return sum(1 for r in current if r.status == status)

        return QuarantineStats(
            project_id=project_id,
            total_quarantined=len(entered),
            auto_quarantined=auto_entered,
            manual_quarantined=len(entered) - auto_entered,
            auto_released=auto_released,
            currently_quarantined=_count(QuarantineStatus.QUARANTINED),
            currently_monitoring=_count(QuarantineStatus.MONITORING),
            resolved=_count(QuarantineStatus.RESOLVED),
        )
