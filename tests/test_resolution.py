"""Unit tests for resolution tracking and the resolution store."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from flakewatch.engine.models import (
    EffortLevel,
    PatternType,
    QuarantineAction,
    QuarantineStatus,
    ResolutionRequest,
    ResolutionStrategy,
    VerificationStatus,
    make_test_id,
)
from flakewatch.engine.quarantine import QuarantineStateMachine
from flakewatch.engine.resolution import ResolutionTracker
from flakewatch.storage.sqlite import SqliteStore

NOW = datetime(2026, 3, 10, tzinfo=UTC)


def _request(**overrides: object) -> ResolutionRequest:
    fields: dict[str, object] = {
        "resolution_strategy": ResolutionStrategy.SYSTEMATIC_CHANGE,
        "estimated_effort": EffortLevel.MEDIUM,
        "actions_taken": ["Replaced sleep with explicit wait"],
        "resolution_notes": "Race in login form",
        "actual_effort_hours": 3.5,
        "project_id": "web",
        "affected_tests": ["test_login"],
        "pattern_type": PatternType.TEMPORAL,
    }
    fields.update(overrides)
    return ResolutionRequest.model_validate(fields)


class TestRecordResolution:
    def test_creates_pending_record(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store)
        record = tracker.record_resolution("pattern-1", "acme", "alice", _request(), now=NOW)

        assert record.id.startswith("resolution-")
        assert record.verification_status == VerificationStatus.PENDING
        assert record.resolved_at == NOW
        assert record.due_at == NOW + timedelta(days=7)
        assert record.follow_up_required is False
        assert record.verified_at is None

    def test_persisted(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store)
        record = tracker.record_resolution("pattern-1", "acme", "alice", _request(), now=NOW)
        loaded = tracker.get(record.id)
        assert loaded == record

    def test_quick_fix_flags_follow_up(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store)
        record = tracker.record_resolution(
            "pattern-1",
            "acme",
            "alice",
            _request(resolution_strategy=ResolutionStrategy.QUICK_FIX),
            now=NOW,
        )
        assert record.follow_up_required is True

    def test_custom_window(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store, window_days=3)
        record = tracker.record_resolution("pattern-1", "acme", "alice", _request(), now=NOW)
        assert record.due_at == NOW + timedelta(days=3)

    def test_unique_ids(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store)
        ids = {tracker.record_resolution("p", "acme", "alice", _request(), now=NOW).id for _ in range(5)}
        assert len(ids) == 5

    def test_moves_quarantined_tests_to_monitoring(self, store: SqliteStore) -> None:
        quarantine = QuarantineStateMachine(store)
        test_id = make_test_id("web", "test_login")
        quarantine.transition(test_id, QuarantineAction.QUARANTINE, "alice", project_id="web", now=NOW)

        tracker = ResolutionTracker(store, quarantine=quarantine)
        record = tracker.record_resolution("pattern-1", "acme", "alice", _request(), now=NOW)

        current = quarantine.get(test_id)
        assert current is not None
        assert current.status == QuarantineStatus.MONITORING
        assert record.id in current.reason


class TestDueForVerification:
    def test_only_elapsed_pending(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store)
        early = tracker.record_resolution("p1", "acme", "alice", _request(), now=NOW)
        tracker.record_resolution("p2", "acme", "alice", _request(), now=NOW + timedelta(days=5))

        due = tracker.due_for_verification(NOW + timedelta(days=7))
        assert [r.id for r in due] == [early.id]

    def test_due_exactly_at_window_end(self, store: SqliteStore) -> None:
        tracker = ResolutionTracker(store)
        record = tracker.record_resolution("p1", "acme", "alice", _request(), now=NOW)
        assert tracker.due_for_verification(record.due_at) != []
        assert tracker.due_for_verification(record.due_at - timedelta(seconds=1)) == []


class TestRequestValidation:
    def test_unknown_strategy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _request(resolution_strategy="hope-for-the-best")

    def test_unknown_effort_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _request(estimated_effort="enormous")

    def test_negative_effort_hours_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _request(actual_effort_hours=-1)

    def test_unexpected_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _request(verification_status="verified")
