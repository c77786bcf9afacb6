"""FlakinessEngine: the operations collaborators call, wired to one store.

The API, CLI and scheduler all go through this facade. ``build_engine`` is the
only place that reads settings; the components themselves take plain values.
"""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime

from flakewatch.config import get_settings
from flakewatch.engine.classifier import analyze_project, classify
from flakewatch.engine.models import (
    EffectivenessSummary,
    ExecutionRecord,
    FlakinessVerdict,
    ProactiveRecommendations,
    ProjectAnalysis,
    QuarantineAction,
    QuarantineEvent,
    QuarantineRecord,
    QuarantineStats,
    ReconcileSummary,
    RecurrenceTrend,
    ResolutionRecord,
    ResolutionRequest,
    TestTimeline,
)
from flakewatch.engine.quarantine import QuarantineStateMachine
from flakewatch.engine.reporter import AggregateReporter
from flakewatch.engine.resolution import ResolutionTracker
from flakewatch.engine.verifier import EffectivenessVerifier
from flakewatch.storage.http_source import HttpExecutionRecordSource
from flakewatch.storage.repository import ExecutionRecordSource
from flakewatch.storage.sqlite import SqliteStore, get_initialized_connection

logger = logging.getLogger(__name__)


class FlakinessEngine:
    def __init__(
        self,
        store: SqliteStore,
        source: ExecutionRecordSource,
        *,
        quarantine: QuarantineStateMachine,
        tracker: ResolutionTracker,
        verifier: EffectivenessVerifier,
        reporter: AggregateReporter,
        timeline_limit: int,
        min_runs: int,
        report_period_days: int,
    ) -> None:
        self.store = store
        self.source = source
        self.quarantine = quarantine
        self.tracker = tracker
        self.verifier = verifier
        self.reporter = reporter
        self.timeline_limit = timeline_limit
        self.min_runs = min_runs
        self.report_period_days = report_period_days

    # -----------------------------------------------------------------------
    # Execution history and classification
    # -----------------------------------------------------------------------

    def ingest_records(self, records: Iterable[ExecutionRecord]) -> int:
        count = self.store.save_records(records)
        logger.debug("Ingested %d execution records", count)
        return count

    def classify(self, timeline: TestTimeline) -> FlakinessVerdict:
        return classify(timeline, min_runs=self.min_runs)

    def analyze_project(self, project_id: str, *, auto_quarantine: bool = True) -> ProjectAnalysis:
        """Classify every test in a project from the execution-record source.

        With ``auto_quarantine`` each flaky verdict is offered to the
        quarantine state machine, which applies its confidence gate.

        Raises:
            DataSourceUnavailableError: If execution records could not be read.
        """
        records = self.source.fetch_records(project_id, limit_per_test=self.timeline_limit)
        analysis = analyze_project(project_id, records, limit=self.timeline_limit, min_runs=self.min_runs)
        if auto_quarantine:
            for verdict in analysis.verdicts:
                self.quarantine.evaluate_verdict(project_id, verdict)
        return analysis

    # -----------------------------------------------------------------------
    # Quarantine
    # -----------------------------------------------------------------------

    def transition_quarantine(
        self,
        test_id: str,
        action: QuarantineAction,
        actor: str,
        *,
        project_id: str | None = None,
        reason: str | None = None,
    ) -> QuarantineRecord:
        return self.quarantine.transition(test_id, action, actor, project_id=project_id, reason=reason)

    def get_quarantine(self, test_id: str) -> QuarantineRecord | None:
        return self.quarantine.get(test_id)

    def get_quarantine_history(self, test_id: str) -> list[QuarantineEvent]:
        return self.quarantine.history(test_id)

    def get_quarantine_stats(self, project_id: str) -> QuarantineStats:
        return self.quarantine.stats(project_id)

    # -----------------------------------------------------------------------
    # Resolutions and verification
    # -----------------------------------------------------------------------

    def record_resolution(
        self,
        pattern_id: str,
        organization_id: str,
        actor: str,
        request: ResolutionRequest,
    ) -> ResolutionRecord:
        return self.tracker.record_resolution(pattern_id, organization_id, actor, request)

    def get_resolution(self, resolution_id: str) -> ResolutionRecord | None:
        return self.tracker.get(resolution_id)

    def verify(self, resolution_id: str, now: datetime | None = None) -> ResolutionRecord:
        return self.verifier.verify(resolution_id, now=now)

    def reconcile(self, now: datetime | None = None) -> ReconcileSummary:
        return self.verifier.reconcile(now=now)

    # -----------------------------------------------------------------------
    # Aggregate reporting
    # -----------------------------------------------------------------------

    def get_effectiveness_metrics(self, organization_id: str, period_days: int | None = None) -> EffectivenessSummary:
        return self.reporter.get_effectiveness_metrics(organization_id, period_days or self.report_period_days)

    def get_recurrence_trend(self, organization_id: str, period_days: int | None = None) -> RecurrenceTrend:
        return self.reporter.get_recurrence_trend(
            organization_id, period_days or self.reporter.recommendations_period_days
        )

    def get_proactive_recommendations(self, organization_id: str) -> ProactiveRecommendations:
        return self.reporter.get_proactive_recommendations(organization_id)


def build_engine(conn: sqlite3.Connection | None = None) -> FlakinessEngine:
    """Wire an engine from settings.

    Args:
        conn: Existing connection to use (tests pass an in-memory one). If None,
              a connection to DATABASE_PATH is opened and its schema initialized.

    Raises:
        ValueError: If no connection is given and the store is not configured.
    """
    settings = get_settings()
    if conn is None:
        conn = get_initialized_connection()
    store = SqliteStore(conn)

    source: ExecutionRecordSource
    if settings.execution_source_url:
        source = HttpExecutionRecordSource(settings.execution_source_url, settings.execution_source_token)
        logger.info("Reading execution records from %s", settings.execution_source_url)
    else:
        source = store

    quarantine = QuarantineStateMachine(store, confidence_gate=settings.quarantine_confidence_gate)
    return FlakinessEngine(
        store,
        source,
        quarantine=quarantine,
        tracker=ResolutionTracker(store, window_days=settings.verification_window_days, quarantine=quarantine),
        verifier=EffectivenessVerifier(
            store,
            source,
            baseline_days=settings.baseline_window_days,
            regression_threshold_percent=settings.regression_threshold_percent,
            stabilization_failure_rate=settings.stabilization_failure_rate,
            cost_per_failure=settings.cost_per_failure,
            quarantine=quarantine,
        ),
        reporter=AggregateReporter(
            store,
            cost_savings_threshold=settings.cost_savings_expansion_threshold,
            recommendations_period_days=settings.recommendations_period_days,
        ),
        timeline_limit=settings.timeline_limit,
        min_runs=settings.min_runs,
        report_period_days=settings.report_period_days,
    )

