"""Aggregate reporting over an organization's resolutions.

Read-only: every call takes a fresh snapshot from the resolution repository.
"""

import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta

from flakewatch.engine.models import (
    EffectivenessSummary,
    PatternType,
    ProactiveRecommendations,
    RecurrencePattern,
    RecurrenceTrend,
    ResolutionRecord,
    ResolutionStrategy,
    StrategyEffectiveness,
    VerificationStatus,
)
from flakewatch.engine.stats import mean
from flakewatch.storage.repository import ResolutionRepository

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30
DEFAULT_RECOMMENDATIONS_PERIOD_DAYS = 90
DEFAULT_COST_SAVINGS_THRESHOLD = 1000.0

HIGH_REGRESSION_RATE = 0.3
IMPROVING_RECURRENCE = 0.15
DETERIORATING_RECURRENCE = 0.3
QUICK_FIX_SHARE = 0.6
MIN_VERIFICATION_SHARE = 0.5
HIGH_EFFORT_HOURS = 20
HIGH_EFFORT_SHARE = 0.3

EMPTY_PERIOD_RECOMMENDATION = "Start resolving patterns to build effectiveness metrics"

PREVENTIVE_MEASURES: dict[PatternType, list[str]] = {
    PatternType.INFRASTRUCTURE: [
        "Implement infrastructure monitoring alerts",
        "Regular infrastructure health checks",
        "Automated failover testing",
    ],
    PatternType.DEPENDENCY: [
        "Pin dependency versions across repositories",
        "Use a centralized package registry configuration",
        "Run dependency update checks before merging",
    ],
    PatternType.ENVIRONMENTAL: [
        "Ensure proper test isolation",
        "Standardize test environment setup and teardown",
        "Verify external services are stubbed in CI",
    ],
    PatternType.TEMPORAL: [
        "Review automated processes and maintenance windows",
        "Distribute scheduled jobs across time windows",
        "Replace fixed sleeps with explicit waits",
    ],
    PatternType.FRAMEWORK: [
        "Keep test framework versions consistent across repositories",
        "Adopt shared fixtures for common setup",
    ],
    PatternType.UNKNOWN: [
        "Add logging around failing tests to classify the pattern",
    ],
}


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


class AggregateReporter:
    def __init__(
        self,
        repository: ResolutionRepository,
        *,
        cost_savings_threshold: float = DEFAULT_COST_SAVINGS_THRESHOLD,
        recommendations_period_days: int = DEFAULT_RECOMMENDATIONS_PERIOD_DAYS,
    ) -> None:
        self.repository = repository
        self.cost_savings_threshold = cost_savings_threshold
        self.recommendations_period_days = recommendations_period_days

    def _resolutions(self, organization_id: str, period_days: int, now: datetime | None) -> tuple[
        list[ResolutionRecord], datetime, datetime
    ]:
        end = now or datetime.now(UTC)
        start = end - timedelta(days=period_days)
        return self.repository.list_resolutions(organization_id, start, end), start, end

    def get_effectiveness_metrics(
        self,
        organization_id: str,
        period_days: int = DEFAULT_PERIOD_DAYS,
        now: datetime | None = None,
    ) -> EffectivenessSummary:
        """Roll up resolutions recorded in the last ``period_days`` days."""
        resolutions, start, end = self._resolutions(organization_id, period_days, now)
        logger.debug("Aggregating %d resolutions for %s since %s", len(resolutions), organization_id, start)
        if not resolutions:
            return EffectivenessSummary(
                organization_id=organization_id,
                period_start=start,
                period_end=end,
                recommended_improvements=[EMPTY_PERIOD_RECOMMENDATION],
            )

        by_status: dict[VerificationStatus, list[ResolutionRecord]] = defaultdict(list)
        for r in resolutions:
            by_status[r.verification_status].append(r)
        verified = by_status[VerificationStatus.VERIFIED]
        regressions = by_status[VerificationStatus.REGRESSION_DETECTED]
        decided = verified + regressions

        return EffectivenessSummary(
            organization_id=organization_id,
            period_start=start,
            period_end=end,
            total_resolutions=len(resolutions),
            pending_resolutions=len(by_status[VerificationStatus.PENDING]),
            successful_resolutions=len(verified),
            regressions=len(regressions),
            regression_rate=len(regressions) / len(decided) if decided else 0.0,
            avg_time_to_resolution_hours=mean([r.actual_effort_hours for r in resolutions]),
            avg_time_to_verification_hours=mean(
                [_hours(r.verified_at - r.resolved_at) for r in decided if r.verified_at is not None]
            ),
            cost_savings_realized=sum(r.effectiveness.cost_savings for r in verified),
            most_effective_strategies=_strategy_effectiveness(decided),
            pattern_recurrence_rate=_overall_recurrence_rate(resolutions),
            recommended_improvements=_recommended_improvements(resolutions, decided),
        )

    def get_recurrence_trend(
        self,
        organization_id: str,
        period_days: int = DEFAULT_RECOMMENDATIONS_PERIOD_DAYS,
        now: datetime | None = None,
    ) -> RecurrenceTrend:
        """Per-pattern-type recurrence, most recurrent first."""
        resolutions, _, _ = self._resolutions(organization_id, period_days, now)
        patterns = _recurrence_patterns(resolutions)

        if not patterns:
            trend = "stable"
        else:
            avg_rate = mean([p.recurrence_rate for p in patterns])
            if avg_rate < IMPROVING_RECURRENCE:
                trend = "improving"
            elif avg_rate > DETERIORATING_RECURRENCE:
                trend = "deteriorating"
            else:
                trend = "stable"
        return RecurrenceTrend(patterns=patterns, overall_trend=trend)

    def get_proactive_recommendations(
        self,
        organization_id: str,
        now: datetime | None = None,
    ) -> ProactiveRecommendations:
        """Advisory recommendations derived from resolution history."""
        metrics = self.get_effectiveness_metrics(organization_id, self.recommendations_period_days, now)
        recurrence = self.get_recurrence_trend(organization_id, self.recommendations_period_days, now)
        recs = ProactiveRecommendations()

        if metrics.regression_rate > HIGH_REGRESSION_RATE:
            recs.immediate.append("High regression rate detected - review resolution verification process")
            recs.immediate.append("Implement more comprehensive testing after pattern fixes")

        recurring = [p for p in recurrence.patterns if p.recurring_patterns > 0]
        if recurring:
            top = recurring[0]
            recs.preventive.append(f"Focus on {top.pattern_type} patterns - high recurrence rate detected")
            recs.preventive.extend(top.suggested_preventive_measures)

        if metrics.cost_savings_realized > self.cost_savings_threshold:
            recs.strategic.append("Pattern resolution program showing strong ROI - consider expanding")
        else:
            recs.strategic.append("Low cost savings - review resolution strategies and focus on high-impact patterns")

        strategies = metrics.most_effective_strategies
        if strategies and strategies[0].strategy == ResolutionStrategy.INFRASTRUCTURE_UPGRADE:
            recs.tooling.append("Infrastructure upgrades showing high success rate - invest in automation")

        return recs


def _strategy_effectiveness(decided: list[ResolutionRecord]) -> list[StrategyEffectiveness]:
    """Success rate and mean savings per strategy over resolutions that have a verdict."""
    groups: dict[ResolutionStrategy, list[ResolutionRecord]] = defaultdict(list)
    for r in decided:
        groups[r.resolution_strategy].append(r)

    results: list[StrategyEffectiveness] = []
    for strategy, records in groups.items():
        successful = [r for r in records if r.verification_status == VerificationStatus.VERIFIED]
        results.append(
            StrategyEffectiveness(
                strategy=strategy,
                total=len(records),
                successful=len(successful),
                success_rate=len(successful) / len(records),
                avg_cost_savings=mean([r.effectiveness.cost_savings for r in successful]),
            )
        )
    return sorted(results, key=lambda s: s.success_rate, reverse=True)


def _group_by_pattern(resolutions: list[ResolutionRecord]) -> dict[str, list[ResolutionRecord]]:
    groups: dict[str, list[ResolutionRecord]] = defaultdict(list)
    for r in sorted(resolutions, key=lambda r: r.resolved_at):
        groups[r.pattern_id].append(r)
    return groups


def _overall_recurrence_rate(resolutions: list[ResolutionRecord]) -> float:
    groups = _group_by_pattern(resolutions)
    if not groups:
        return 0.0
    return sum(1 for g in groups.values() if len(g) > 1) / len(groups)


def _recurrence_patterns(resolutions: list[ResolutionRecord]) -> list[RecurrencePattern]:
    """A pattern recurs when it needed resolving more than once in the period."""
    by_type: dict[PatternType, list[list[ResolutionRecord]]] = defaultdict(list)
    for group in _group_by_pattern(resolutions).values():
        by_type[group[0].pattern_type].append(group)

    patterns: list[RecurrencePattern] = []
    for pattern_type, groups in by_type.items():
        recurring = [g for g in groups if len(g) > 1]
        gaps = [
            (later.resolved_at - earlier.resolved_at).total_seconds() / 86400
            for g in recurring
            for earlier, later in zip(g, g[1:], strict=False)
        ]
        patterns.append(
            RecurrencePattern(
                pattern_type=pattern_type,
                distinct_patterns=len(groups),
                recurring_patterns=len(recurring),
                recurrence_rate=len(recurring) / len(groups),
                avg_days_between_occurrences=mean(gaps),
                last_occurrence=max(g[-1].resolved_at for g in groups),
                suggested_preventive_measures=PREVENTIVE_MEASURES[pattern_type],
            )
        )
    return sorted(patterns, key=lambda p: p.recurrence_rate, reverse=True)


def _recommended_improvements(
    resolutions: list[ResolutionRecord],
    decided: list[ResolutionRecord],
) -> list[str]:
    improvements: list[str] = []
    total = len(resolutions)

    quick_fixes = sum(1 for r in resolutions if r.resolution_strategy == ResolutionStrategy.QUICK_FIX)
    if quick_fixes / total > QUICK_FIX_SHARE:
        improvements.append("High percentage of quick fixes - consider more systematic approaches")

    if len(decided) / total < MIN_VERIFICATION_SHARE:
        improvements.append("Low verification rate - improve resolution verification process")

    high_effort = sum(1 for r in resolutions if r.actual_effort_hours > HIGH_EFFORT_HOURS)
    if high_effort / total > HIGH_EFFORT_SHARE:
        improvements.append("Many high-effort resolutions - invest in preventive measures")

    return improvements
