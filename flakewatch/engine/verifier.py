"""Effectiveness verification for recorded fixes.

Compares a baseline window before the fix, ``[resolved_at - baseline, resolved_at)``,
with the post-fix window ``[resolved_at, due_at]``. Verification is
at-most-once: a resolution that is no longer pending is returned untouched, and
the store only accepts the verdict while the row is still pending. If the
execution-record source is unavailable the run aborts and the resolution stays
pending for the next reconciliation scan.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from flakewatch.engine.errors import DataSourceUnavailableError, ResolutionNotFoundError
from flakewatch.engine.models import (
    EffectivenessMetrics,
    ExecutionRecord,
    ReconcileSummary,
    ResolutionRecord,
    VerificationStatus,
)
from flakewatch.engine.quarantine import QuarantineStateMachine
from flakewatch.engine.stats import daily_failure_rate_variance, failure_rate, group_by_day
from flakewatch.observability.metrics import PENDING_VERIFICATIONS, VERIFICATIONS_TOTAL
from flakewatch.storage.repository import ExecutionRecordSource, ResolutionRepository

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_DAYS = 14
DEFAULT_REGRESSION_THRESHOLD_PERCENT = 20.0
DEFAULT_STABILIZATION_FAILURE_RATE = 0.1
DEFAULT_COST_PER_FAILURE = 25.0
# Scales the observed post-fix window up to a monthly estimate
MONTHLY_EXTRAPOLATION = 4

REGRESSION_FOLLOW_UP_NOTE = "Regression detected - further investigation required"


def failure_reduction_percent(baseline_rate: float, current_rate: float) -> float:
    if baseline_rate <= 0:
        return 0.0
    return max(0.0, (baseline_rate - current_rate) / baseline_rate * 100)


def stability_improvement(baseline: Sequence[ExecutionRecord], post_fix: Sequence[ExecutionRecord]) -> float:
    """Relative drop in day-to-day failure-rate variance (0-1)."""
    baseline_variance = daily_failure_rate_variance(baseline)
    if baseline_variance <= 0:
        return 0.0
    current_variance = daily_failure_rate_variance(post_fix)
    return max(0.0, (baseline_variance - current_variance) / baseline_variance)


def time_to_stabilization_days(
    post_fix: Sequence[ExecutionRecord],
    resolved_at: datetime,
    threshold: float = DEFAULT_STABILIZATION_FAILURE_RATE,
) -> int | None:
    """1-based day offset of the first post-fix day at or under ``threshold``, or None."""
    for day, records in group_by_day(post_fix).items():
        if failure_rate(records) <= threshold:
            return (day - resolved_at.date()).days + 1
    return None


def measure_effectiveness(
    baseline: Sequence[ExecutionRecord],
    post_fix: Sequence[ExecutionRecord],
    resolved_at: datetime,
    *,
    stabilization_failure_rate: float = DEFAULT_STABILIZATION_FAILURE_RATE,
    cost_per_failure: float = DEFAULT_COST_PER_FAILURE,
) -> EffectivenessMetrics:
    reduction = failure_reduction_percent(failure_rate(baseline), failure_rate(post_fix))
    return EffectivenessMetrics(
        failure_reduction_percent=reduction,
        stability_improvement=stability_improvement(baseline, post_fix),
        cost_savings=(reduction / 100) * (len(post_fix) * MONTHLY_EXTRAPOLATION) * cost_per_failure,
        time_to_stabilization_days=time_to_stabilization_days(post_fix, resolved_at, stabilization_failure_rate),
    )


class EffectivenessVerifier:
    def __init__(
        self,
        resolutions: ResolutionRepository,
        source: ExecutionRecordSource,
        *,
        baseline_days: int = DEFAULT_BASELINE_DAYS,
        regression_threshold_percent: float = DEFAULT_REGRESSION_THRESHOLD_PERCENT,
        stabilization_failure_rate: float = DEFAULT_STABILIZATION_FAILURE_RATE,
        cost_per_failure: float = DEFAULT_COST_PER_FAILURE,
        quarantine: QuarantineStateMachine | None = None,
    ) -> None:
        self.resolutions = resolutions
        self.source = source
        self.baseline_days = baseline_days
        self.regression_threshold_percent = regression_threshold_percent
        self.stabilization_failure_rate = stabilization_failure_rate
        self.cost_per_failure = cost_per_failure
        self.quarantine = quarantine

    def _fetch_windows(self, record: ResolutionRecord) -> tuple[list[ExecutionRecord], list[ExecutionRecord]]:
        if not record.project_id:
            logger.warning("Resolution %s has no project; verifying against empty windows", record.id)
            return [], []

        try:
            baseline = self.source.fetch_records(
                record.project_id,
                test_names=record.affected_tests,
                start=record.resolved_at - timedelta(days=self.baseline_days),
                end=record.resolved_at,
            )
            post_fix = self.source.fetch_records(
                record.project_id,
                test_names=record.affected_tests,
                start=record.resolved_at,
                end=record.due_at,
            )
        except DataSourceUnavailableError:
            VERIFICATIONS_TOTAL.labels(outcome="unavailable").inc()
            logger.warning("Execution records unavailable for resolution %s; leaving pending", record.id)
            raise

        # The source window is inclusive; the fix instant belongs to the post-fix side only
        baseline = [r for r in baseline if r.timestamp < record.resolved_at]
        return baseline, post_fix

    def verify(self, resolution_id: str, now: datetime | None = None) -> ResolutionRecord:
        """Verify a resolution once its post-fix window has elapsed.

        Returns the resolution unchanged if it was already verified or is not
        yet due.

        Raises:
            ResolutionNotFoundError: If no resolution has this id.
            DataSourceUnavailableError: If execution records could not be read.
        """
        now = now or datetime.now(UTC)
        record = self.resolutions.get_resolution(resolution_id)
        if record is None:
            raise ResolutionNotFoundError(resolution_id)

        if record.verification_status != VerificationStatus.PENDING:
            VERIFICATIONS_TOTAL.labels(outcome="duplicate").inc()
            logger.warning(
                "Duplicate verification of %s ignored (already %s)", resolution_id, record.verification_status
            )
            return record

        if now < record.due_at:
            VERIFICATIONS_TOTAL.labels(outcome="not-due").inc()
            logger.info("Resolution %s not yet due for verification (due %s)", resolution_id, record.due_at)
            return record

        baseline, post_fix = self._fetch_windows(record)
        effectiveness = measure_effectiveness(
            baseline,
            post_fix,
            record.resolved_at,
            stabilization_failure_rate=self.stabilization_failure_rate,
            cost_per_failure=self.cost_per_failure,
        )
        regressed = effectiveness.failure_reduction_percent < self.regression_threshold_percent
        status = VerificationStatus.REGRESSION_DETECTED if regressed else VerificationStatus.VERIFIED

        updates: dict[str, object] = {
            "verified_at": now,
            "verification_status": status,
            "effectiveness": effectiveness,
        }
        if regressed:
            updates["follow_up_required"] = True
            updates["follow_up_notes"] = REGRESSION_FOLLOW_UP_NOTE
        verified = record.model_copy(update=updates)

        if not self.resolutions.complete_verification(verified):
            VERIFICATIONS_TOTAL.labels(outcome="duplicate").inc()
            logger.warning("Resolution %s was verified concurrently; keeping the stored verdict", resolution_id)
            return self.resolutions.get_resolution(resolution_id) or record

        if self.quarantine is not None and record.project_id:
            self.quarantine.settle_fix(
                record.project_id,
                record.affected_tests,
                resolution_id=record.id,
                regressed=regressed,
                reason=f"Verification of {record.id}: {effectiveness.failure_reduction_percent:.1f}% failure reduction",
                now=now,
            )

        VERIFICATIONS_TOTAL.labels(outcome=status.value).inc()
        logger.info(
            "Resolution verification completed: %s, status: %s (baseline %d runs, post-fix %d runs)",
            resolution_id,
            status,
            len(baseline),
            len(post_fix),
        )
        return verified

    def reconcile(self, now: datetime | None = None) -> ReconcileSummary:
        """Verify every pending resolution whose window has elapsed.

        One failing resolution never stops the scan; unavailable data leaves it
        pending for the next run.
        """
        now = now or datetime.now(UTC)
        due = self.resolutions.list_due_resolutions(now)
        PENDING_VERIFICATIONS.set(len(due))
        summary = ReconcileSummary(scanned=len(due))

        for record in due:
            try:
                result = self.verify(record.id, now=now)
            except DataSourceUnavailableError:
                summary.unavailable += 1
                continue
            except Exception:
                logger.exception("Verification of resolution %s failed", record.id)
                summary.failed += 1
                continue

            if result.verification_status == VerificationStatus.VERIFIED:
                summary.verified += 1
            elif result.verification_status == VerificationStatus.REGRESSION_DETECTED:
                summary.regressions += 1

        if due:
            logger.info(
                "Reconciliation scanned %d due resolutions: %d verified, %d regressions, %d unavailable, %d failed",
                summary.scanned,
                summary.verified,
                summary.regressions,
                summary.unavailable,
                summary.failed,
            )
        return summary
