"""SQLite-backed store: connection management, schema init, and repositories.

All database operations use parameterized queries to prevent SQL injection.
Connections are created with check_same_thread=False because the API worker
threads and the scheduler share one. A sqlite3 connection has a single
transaction state, so SqliteStore runs every unit of work under a lock. The
schema is auto-created on first access via CREATE TABLE IF NOT EXISTS
(idempotent). Timestamps are stored as UTC ISO 8601 text with fixed
microsecond precision so string comparison orders them correctly.
"""

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from datetime import UTC, datetime

from flakewatch.config import get_settings
from flakewatch.engine.errors import DataSourceUnavailableError
from flakewatch.engine.models import (
    EffectivenessMetrics,
    ExecutionRecord,
    QuarantineEvent,
    QuarantineRecord,
    ResolutionRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS execution_records (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id     TEXT NOT NULL,
    test_name      TEXT NOT NULL,
    suite_name     TEXT DEFAULT '',
    status         TEXT NOT NULL,
    duration_millis INTEGER NOT NULL,
    timestamp      TEXT NOT NULL,
    error_message  TEXT,
    stack_trace    TEXT,
    retry_count    INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_records_lookup ON execution_records(project_id, test_name, timestamp);

CREATE TABLE IF NOT EXISTS quarantine_records (
    test_id        TEXT PRIMARY KEY,
    project_id     TEXT NOT NULL,
    status         TEXT NOT NULL,
    reason         TEXT DEFAULT '',
    quarantined_at TEXT,
    quarantined_by TEXT,
    updated_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_quarantine_project ON quarantine_records(project_id);

CREATE TABLE IF NOT EXISTS quarantine_events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    test_id      TEXT NOT NULL,
    project_id   TEXT NOT NULL,
    action       TEXT NOT NULL,
    from_status  TEXT NOT NULL,
    to_status    TEXT NOT NULL,
    reason       TEXT DEFAULT '',
    actor        TEXT NOT NULL,
    occurred_at  TEXT NOT NULL,
    resolution_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_events_test ON quarantine_events(test_id, occurred_at);

CREATE TABLE IF NOT EXISTS resolutions (
    id                   TEXT PRIMARY KEY,
    pattern_id           TEXT NOT NULL,
    organization_id      TEXT NOT NULL,
    project_id           TEXT,
    resolved_by          TEXT NOT NULL,
    resolution_notes     TEXT DEFAULT '',
    actions_taken        TEXT DEFAULT '[]',
    resolution_strategy  TEXT NOT NULL,
    pattern_type         TEXT NOT NULL,
    estimated_effort     TEXT NOT NULL,
    actual_effort_hours  REAL DEFAULT 0.0,
    affected_tests       TEXT DEFAULT '[]',
    resolved_at          TEXT NOT NULL,
    due_at               TEXT NOT NULL,
    verified_at          TEXT,
    verification_status  TEXT NOT NULL DEFAULT 'pending',
    failure_reduction_percent REAL DEFAULT 0.0,
    stability_improvement     REAL DEFAULT 0.0,
    cost_savings              REAL DEFAULT 0.0,
    time_to_stabilization_days INTEGER,
    follow_up_required   INTEGER DEFAULT 0,
    follow_up_notes      TEXT,
    related_patterns     TEXT DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_resolutions_org ON resolutions(organization_id, resolved_at);
CREATE INDEX IF NOT EXISTS idx_resolutions_due ON resolutions(verification_status, due_at);
"""


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.

    Raises:
        ValueError: If the store is not configured (empty db path).
    """
    if db_path is None:
        settings = get_settings()
        db_path = settings.database_path
    if not db_path:
        msg = "Store not configured (DATABASE_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def is_store_configured() -> bool:
    """Check whether the store is configured (non-empty db path)."""
    try:
        settings = get_settings()
        return bool(settings.database_path)
    except Exception:
        return False


def get_initialized_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Get a connection with schema already initialized. Convenience wrapper."""
    conn = get_connection(db_path)
    init_schema(conn)
    return conn


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteStore:
    """Execution records, quarantine state and resolutions in one SQLite database."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock for one unit of work.

        Commits when the block exits normally and rolls back when it raises.
        Blocks must not nest: the inner exit would commit the outer's work.
        """
        with self._lock, self._conn:
            yield self._conn

    def ping(self) -> None:
        with self.transaction() as conn:
            conn.execute("SELECT 1")

    # -----------------------------------------------------------------------
    # Execution records
    # -----------------------------------------------------------------------

    def save_records(self, records: Iterable[ExecutionRecord]) -> int:
        """Bulk-insert execution records. Returns the number inserted."""
        rows = [
            (
                r.project_id,
                r.test_name,
                r.suite_name,
                r.status.value,
                r.duration_millis,
                _iso(r.timestamp),
                r.error_message,
                r.stack_trace,
                r.retry_count,
            )
            for r in records
        ]
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO execution_records
                   (project_id, test_name, suite_name, status, duration_millis,
                    timestamp, error_message, stack_trace, retry_count)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        return len(rows)

    def fetch_records(
        self,
        project_id: str,
        *,
        test_names: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit_per_test: int | None = None,
    ) -> list[ExecutionRecord]:
        conditions: list[str] = ["project_id = ?"]
        params: list[object] = [project_id]

        if test_names:
            conditions.append(f"test_name IN ({', '.join('?' for _ in test_names)})")
            params.extend(test_names)
        if start is not None:
            conditions.append("timestamp >= ?")
            params.append(_iso(start))
        if end is not None:
            conditions.append("timestamp <= ?")
            params.append(_iso(end))

        where = " AND ".join(conditions)
        if limit_per_test is None:
            query = f"SELECT * FROM execution_records WHERE {where} ORDER BY timestamp DESC"
        else:
            query = f"""SELECT * FROM (
                           SELECT *, ROW_NUMBER() OVER (
                               PARTITION BY test_name ORDER BY timestamp DESC, id DESC
                           ) AS run_rank
                           FROM execution_records WHERE {where}
                       ) WHERE run_rank <= ? ORDER BY timestamp DESC"""
            params.append(limit_per_test)

        try:
            with self.transaction() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            msg = f"Failed to read execution records for project {project_id}: {exc}"
            raise DataSourceUnavailableError(msg) from exc
        return [_row_to_record(r) for r in rows]

    # -----------------------------------------------------------------------
    # Quarantine
    # -----------------------------------------------------------------------

    def get_quarantine(self, test_id: str) -> QuarantineRecord | None:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM quarantine_records WHERE test_id = ?", (test_id,)).fetchone()
        if row is None:
            return None
        return _row_to_quarantine(row)

    def list_quarantines(self, project_id: str) -> list[QuarantineRecord]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM quarantine_records WHERE project_id = ? ORDER BY test_id",
                (project_id,),
            ).fetchall()
        return [_row_to_quarantine(r) for r in rows]

    def save_quarantine(self, record: QuarantineRecord, event: QuarantineEvent) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO quarantine_records
                   (test_id, project_id, status, reason, quarantined_at, quarantined_by, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(test_id) DO UPDATE SET
                       status = excluded.status,
                       reason = excluded.reason,
                       quarantined_at = excluded.quarantined_at,
                       quarantined_by = excluded.quarantined_by,
                       updated_at = excluded.updated_at""",
                (
                    record.test_id,
                    record.project_id,
                    record.status.value,
                    record.reason,
                    _iso(record.quarantined_at),
                    record.quarantined_by,
                    _iso(record.updated_at),
                ),
            )
            conn.execute(
                """INSERT INTO quarantine_events
                   (test_id, project_id, action, from_status, to_status, reason, actor,
                    occurred_at, resolution_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.test_id,
                    event.project_id,
                    event.action.value,
                    event.from_status.value,
                    event.to_status.value,
                    event.reason,
                    event.actor,
                    _iso(event.occurred_at),
                    event.resolution_id,
                ),
            )

    def get_quarantine_events(
        self,
        *,
        test_id: str | None = None,
        project_id: str | None = None,
    ) -> list[QuarantineEvent]:
        conditions: list[str] = []
        params: list[object] = []
        if test_id:
            conditions.append("test_id = ?")
            params.append(test_id)
        if project_id:
            conditions.append("project_id = ?")
            params.append(project_id)

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        with self.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM quarantine_events{where} ORDER BY occurred_at, id",
                params,
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    # -----------------------------------------------------------------------
    # Resolutions
    # -----------------------------------------------------------------------

    def save_resolution(self, record: ResolutionRecord) -> None:
        eff = record.effectiveness
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO resolutions
                   (id, pattern_id, organization_id, project_id, resolved_by, resolution_notes,
                    actions_taken, resolution_strategy, pattern_type, estimated_effort,
                    actual_effort_hours, affected_tests, resolved_at, due_at, verified_at,
                    verification_status, failure_reduction_percent, stability_improvement,
                    cost_savings, time_to_stabilization_days, follow_up_required,
                    follow_up_notes, related_patterns)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.pattern_id,
                    record.organization_id,
                    record.project_id,
                    record.resolved_by,
                    record.resolution_notes,
                    json.dumps(record.actions_taken),
                    record.resolution_strategy.value,
                    record.pattern_type.value,
                    record.estimated_effort.value,
                    record.actual_effort_hours,
                    json.dumps(record.affected_tests),
                    _iso(record.resolved_at),
                    _iso(record.due_at),
                    _iso(record.verified_at),
                    record.verification_status.value,
                    eff.failure_reduction_percent,
                    eff.stability_improvement,
                    eff.cost_savings,
                    eff.time_to_stabilization_days,
                    int(record.follow_up_required),
                    record.follow_up_notes,
                    json.dumps(record.related_patterns),
                ),
            )

    def get_resolution(self, resolution_id: str) -> ResolutionRecord | None:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM resolutions WHERE id = ?", (resolution_id,)).fetchone()
        if row is None:
            return None
        return _row_to_resolution(row)

    def complete_verification(self, record: ResolutionRecord) -> bool:
        eff = record.effectiveness
        with self.transaction() as conn:
            cursor = conn.execute(
                """UPDATE resolutions SET
                       verified_at = ?,
                       verification_status = ?,
                       failure_reduction_percent = ?,
                       stability_improvement = ?,
                       cost_savings = ?,
                       time_to_stabilization_days = ?,
                       follow_up_required = ?,
                       follow_up_notes = ?
                   WHERE id = ? AND verification_status = 'pending'""",
                (
                    _iso(record.verified_at),
                    record.verification_status.value,
                    eff.failure_reduction_percent,
                    eff.stability_improvement,
                    eff.cost_savings,
                    eff.time_to_stabilization_days,
                    int(record.follow_up_required),
                    record.follow_up_notes,
                    record.id,
                ),
            )
        return cursor.rowcount == 1

    def list_due_resolutions(self, now: datetime) -> list[ResolutionRecord]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM resolutions WHERE verification_status = 'pending' AND due_at <= ? ORDER BY due_at",
                (_iso(now),),
            ).fetchall()
        return [_row_to_resolution(r) for r in rows]

    def list_resolutions(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ResolutionRecord]:
        with self.transaction() as conn:
            rows = conn.execute(
                """SELECT * FROM resolutions
                   WHERE organization_id = ? AND resolved_at >= ? AND resolved_at <= ?
                   ORDER BY resolved_at""",
                (organization_id, _iso(start), _iso(end)),
            ).fetchall()
        return [_row_to_resolution(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_record(row: sqlite3.Row) -> ExecutionRecord:
    return ExecutionRecord(
        project_id=row["project_id"],
        test_name=row["test_name"],
        suite_name=row["suite_name"] or "",
        status=row["status"],
        duration_millis=row["duration_millis"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        error_message=row["error_message"],
        stack_trace=row["stack_trace"],
        retry_count=row["retry_count"],
    )


def _row_to_quarantine(row: sqlite3.Row) -> QuarantineRecord:
    return QuarantineRecord(
        test_id=row["test_id"],
        project_id=row["project_id"],
        status=row["status"],
        reason=row["reason"] or "",
        quarantined_at=_parse(row["quarantined_at"]),
        quarantined_by=row["quarantined_by"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> QuarantineEvent:
    return QuarantineEvent(
        test_id=row["test_id"],
        project_id=row["project_id"],
        action=row["action"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        reason=row["reason"] or "",
        actor=row["actor"],
        occurred_at=datetime.fromisoformat(row["occurred_at"]),
        resolution_id=row["resolution_id"],
    )


def _row_to_resolution(row: sqlite3.Row) -> ResolutionRecord:
    return ResolutionRecord(
        id=row["id"],
        pattern_id=row["pattern_id"],
        organization_id=row["organization_id"],
        project_id=row["project_id"],
        resolved_by=row["resolved_by"],
        resolution_notes=row["resolution_notes"] or "",
        actions_taken=json.loads(row["actions_taken"] or "[]"),
        resolution_strategy=row["resolution_strategy"],
        pattern_type=row["pattern_type"],
        estimated_effort=row["estimated_effort"],
        actual_effort_hours=row["actual_effort_hours"],
        affected_tests=json.loads(row["affected_tests"] or "[]"),
        resolved_at=datetime.fromisoformat(row["resolved_at"]),
        due_at=datetime.fromisoformat(row["due_at"]),
        verified_at=_parse(row["verified_at"]),
        verification_status=row["verification_status"],
        effectiveness=EffectivenessMetrics(
            failure_reduction_percent=row["failure_reduction_percent"],
            stability_improvement=row["stability_improvement"],
            cost_savings=row["cost_savings"],
            time_to_stabilization_days=row["time_to_stabilization_days"],
        ),
        follow_up_required=bool(row["follow_up_required"]),
        follow_up_notes=row["follow_up_notes"],
        related_patterns=json.loads(row["related_patterns"] or "[]"),
    )
