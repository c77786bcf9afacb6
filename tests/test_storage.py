"""Unit tests for the SQLite store: schema, connections and repository queries."""

import sqlite3
import threading
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from flakewatch.engine.models import (
    EffectivenessMetrics,
    EffortLevel,
    ExecutionRecord,
    PatternType,
    QuarantineAction,
    QuarantineEvent,
    QuarantineRecord,
    QuarantineStatus,
    ResolutionRecord,
    ResolutionStrategy,
    TestStatus,
    VerificationStatus,
)
from flakewatch.engine.quarantine import QuarantineStateMachine
from flakewatch.storage.sqlite import (
    SqliteStore,
    get_connection,
    get_initialized_connection,
    init_schema,
    is_store_configured,
)

BASE = datetime(2026, 3, 1, tzinfo=UTC)

_STRAY_INSERT = """INSERT INTO execution_records (project_id, test_name, status, duration_millis, timestamp)
                   VALUES ('web', 'stray', 'passed', 1, ?)"""


def _make_conn() -> sqlite3.Connection:
    """Create an in-memory SQLite connection with schema initialized."""
    conn = get_connection(":memory:")
    init_schema(conn)
    return conn


def _exec(test_name: str, hours: int, status: TestStatus = TestStatus.PASSED) -> ExecutionRecord:
    return ExecutionRecord(
        project_id="web",
        test_name=test_name,
        status=status,
        duration_millis=120,
        timestamp=BASE + timedelta(hours=hours),
        error_message="boom" if status == TestStatus.FAILED else None,
        retry_count=1,
    )


def _resolution(resolution_id: str = "resolution-1") -> ResolutionRecord:
    return ResolutionRecord(
        id=resolution_id,
        pattern_id="pattern-1",
        organization_id="acme",
        project_id="web",
        resolved_by="alice",
        resolution_notes="notes",
        actions_taken=["a", "b"],
        resolution_strategy=ResolutionStrategy.PROCESS_IMPROVEMENT,
        pattern_type=PatternType.FRAMEWORK,
        estimated_effort=EffortLevel.HIGH,
        actual_effort_hours=12.0,
        affected_tests=["test_login"],
        resolved_at=BASE,
        due_at=BASE + timedelta(days=7),
        related_patterns=["pattern-0"],
    )


# ---------------------------------------------------------------------------
# Schema and connections
# ---------------------------------------------------------------------------


class TestSchemaInit:
    def test_creates_tables(self) -> None:
        conn = _make_conn()
        tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        table_names = {row["name"] for row in tables}
        assert {"execution_records", "quarantine_records", "quarantine_events", "resolutions"} <= table_names

    def test_idempotent(self) -> None:
        conn = _make_conn()
        # Second call should not raise
        init_schema(conn)

    def test_creates_indexes(self) -> None:
        conn = _make_conn()
        indexes = conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()
        index_names = {row["name"] for row in indexes}
        assert "idx_records_lookup" in index_names
        assert "idx_quarantine_project" in index_names
        assert "idx_events_test" in index_names
        assert "idx_resolutions_org" in index_names
        assert "idx_resolutions_due" in index_names


class TestConnection:
    def test_unconfigured_store_raises(self, mock_settings: Any) -> None:
        mock_settings.database_path = ""
        with pytest.raises(ValueError, match="not configured"):
            get_connection()

    def test_reads_path_from_settings(self, mock_settings: Any) -> None:
        conn = get_initialized_connection()
        assert conn.execute("SELECT 1").fetchone()[0] == 1

    def test_file_database(self, tmp_path: Any) -> None:
        path = str(tmp_path / "flakewatch.db")
        SqliteStore(get_initialized_connection(path)).save_records([_exec("t", 0)])
        assert len(SqliteStore(get_initialized_connection(path)).fetch_records("web")) == 1

    def test_is_store_configured(self, mock_settings: Any) -> None:
        assert is_store_configured() is True
        mock_settings.database_path = ""
        assert is_store_configured() is False


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


class TestExecutionRecords:
    def test_round_trip(self, store: SqliteStore) -> None:
        record = _exec("test_login", 0, TestStatus.FAILED)
        assert store.save_records([record]) == 1
        assert store.fetch_records("web") == [record]

    def test_newest_first(self, store: SqliteStore) -> None:
        store.save_records([_exec("t", h) for h in (2, 0, 1)])
        stamps = [r.timestamp for r in store.fetch_records("web")]
        assert stamps == sorted(stamps, reverse=True)

    def test_filters_by_test_name(self, store: SqliteStore) -> None:
        store.save_records([_exec("a", 0), _exec("b", 1), _exec("c", 2)])
        names = {r.test_name for r in store.fetch_records("web", test_names=["a", "c"])}
        assert names == {"a", "c"}

    def test_window_is_inclusive(self, store: SqliteStore) -> None:
        store.save_records([_exec("t", h) for h in range(5)])
        records = store.fetch_records("web", start=BASE + timedelta(hours=1), end=BASE + timedelta(hours=3))
        assert len(records) == 3

    def test_other_project_excluded(self, store: SqliteStore) -> None:
        store.save_records([_exec("t", 0)])
        assert store.fetch_records("api") == []


# ---------------------------------------------------------------------------
# Quarantine
# ---------------------------------------------------------------------------


class TestQuarantineStore:
    def _save(self, store: SqliteStore, status: QuarantineStatus, hours: int) -> None:
        now = BASE + timedelta(hours=hours)
        store.save_quarantine(
            QuarantineRecord(
                test_id="web::t",
                project_id="web",
                status=status,
                reason="why",
                quarantined_at=now,
                quarantined_by="alice",
                updated_at=now,
            ),
            QuarantineEvent(
                test_id="web::t",
                project_id="web",
                action=QuarantineAction.QUARANTINE,
                from_status=QuarantineStatus.ACTIVE,
                to_status=status,
                reason="why",
                actor="alice",
                occurred_at=now,
            ),
        )

    def test_upsert_keeps_one_record(self, store: SqliteStore) -> None:
        self._save(store, QuarantineStatus.QUARANTINED, 0)
        self._save(store, QuarantineStatus.MONITORING, 1)
        assert len(store.list_quarantines("web")) == 1
        assert store.get_quarantine("web::t").status == QuarantineStatus.MONITORING  # type: ignore[union-attr]

    def test_events_appended_in_order(self, store: SqliteStore) -> None:
        self._save(store, QuarantineStatus.QUARANTINED, 0)
        self._save(store, QuarantineStatus.MONITORING, 1)
        events = store.get_quarantine_events(test_id="web::t")
        assert [e.to_status for e in events] == [QuarantineStatus.QUARANTINED, QuarantineStatus.MONITORING]
        assert store.get_quarantine_events(project_id="api") == []

    def test_missing(self, store: SqliteStore) -> None:
        assert store.get_quarantine("nope") is None


# ---------------------------------------------------------------------------
# Resolutions
# ---------------------------------------------------------------------------


class TestResolutionStore:
    def test_round_trip(self, store: SqliteStore) -> None:
        record = _resolution()
        store.save_resolution(record)
        assert store.get_resolution(record.id) == record

    def test_missing(self, store: SqliteStore) -> None:
        assert store.get_resolution("nope") is None

    def test_complete_verification_once(self, store: SqliteStore) -> None:
        store.save_resolution(_resolution())
        verified = _resolution().model_copy(
            update={
                "verification_status": VerificationStatus.VERIFIED,
                "verified_at": BASE + timedelta(days=7),
                "effectiveness": EffectivenessMetrics(
                    failure_reduction_percent=80.0,
                    stability_improvement=0.5,
                    cost_savings=100.0,
                    time_to_stabilization_days=None,
                ),
            }
        )
        assert store.complete_verification(verified) is True
        assert store.complete_verification(verified) is False

        stored = store.get_resolution("resolution-1")
        assert stored is not None
        assert stored.verification_status == VerificationStatus.VERIFIED
        assert stored.effectiveness.time_to_stabilization_days is None
        assert stored.effectiveness.failure_reduction_percent == 80.0

    def test_list_resolutions_by_org_and_window(self, store: SqliteStore) -> None:
        store.save_resolution(_resolution("resolution-1"))
        store.save_resolution(_resolution("resolution-2").model_copy(update={"organization_id": "globex"}))
        store.save_resolution(
            _resolution("resolution-3").model_copy(update={"resolved_at": BASE - timedelta(days=60)})
        )
        found = store.list_resolutions("acme", BASE - timedelta(days=30), BASE)
        assert [r.id for r in found] == ["resolution-1"]


# ---------------------------------------------------------------------------
# Per-test record cap
# ---------------------------------------------------------------------------


class TestLimitPerTest:
    def test_keeps_newest_runs_of_each_test(self, store: SqliteStore) -> None:
        store.save_records([_exec("a", h) for h in range(8)] + [_exec("b", h) for h in range(3)])

        records = store.fetch_records("web", limit_per_test=5)

        a_hours = [int((r.timestamp - BASE).total_seconds() // 3600) for r in records if r.test_name == "a"]
        assert a_hours == [7, 6, 5, 4, 3]
        assert sum(1 for r in records if r.test_name == "b") == 3
        stamps = [r.timestamp for r in records]
        assert stamps == sorted(stamps, reverse=True)

    def test_combines_with_filters(self, store: SqliteStore) -> None:
        store.save_records([_exec("a", h) for h in range(8)] + [_exec("b", h) for h in range(8)])
        records = store.fetch_records("web", test_names=["a"], end=BASE + timedelta(hours=4), limit_per_test=2)
        assert [r.timestamp for r in records] == [BASE + timedelta(hours=4), BASE + timedelta(hours=3)]


# ---------------------------------------------------------------------------
# Concurrent use of one connection
# ---------------------------------------------------------------------------


class TestSharedConnection:
    def test_transaction_rolls_back(self, store: SqliteStore) -> None:
        with pytest.raises(RuntimeError, match="abort"), store.transaction() as conn:
            conn.execute(_STRAY_INSERT, (BASE.isoformat(),))
            raise RuntimeError("abort")
        assert store.fetch_records("web") == []

    def test_other_thread_cannot_commit_a_failing_transaction(self, store: SqliteStore) -> None:
        machine = QuarantineStateMachine(store)
        machine.transition("web::t", QuarantineAction.QUARANTINE, "alice", project_id="web", now=BASE)

        inserted = threading.Event()
        errors: list[Exception] = []

        def failing_writer() -> None:
            try:
                with store.transaction() as conn:
                    conn.execute(_STRAY_INSERT, (BASE.isoformat(),))
                    inserted.set()
                    # Give the other thread time to reach the store while this transaction is open
                    time.sleep(0.2)
                    raise RuntimeError("writer failed")
            except RuntimeError as exc:
                errors.append(exc)

        def releaser() -> None:
            inserted.wait(timeout=5)
            machine.transition("web::t", QuarantineAction.RELEASE, "bob", now=BASE + timedelta(hours=1))

        threads = [threading.Thread(target=failing_writer), threading.Thread(target=releaser)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(errors) == 1
        assert store.fetch_records("web", test_names=["stray"]) == []
        record = store.get_quarantine("web::t")
        assert record is not None
        assert record.status == QuarantineStatus.ACTIVE
        assert [e.action for e in store.get_quarantine_events(test_id="web::t")] == [
            QuarantineAction.QUARANTINE,
            QuarantineAction.RELEASE,
        ]

    def test_parallel_writers_all_land(self, store: SqliteStore) -> None:
        def writer(name: str) -> None:
            for h in range(20):
                store.save_records([_exec(name, h)])

        threads = [threading.Thread(target=writer, args=(f"t{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(store.fetch_records("web")) == 80
