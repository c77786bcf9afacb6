"""Flakiness classification over a single test timeline.

Three independent signals, any of which marks a test flaky:

- intermittent failures: failure rate strictly between 10% and 90%
- duration variance: coefficient of variation of run duration above 0.5
- alternating outcomes: more than 60% of adjacent runs change status, with
  more than one failure overall

Degenerate input (too few runs, zero mean duration) resolves to a non-firing
signal rather than an error.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from flakewatch.engine.history import DEFAULT_TIMELINE_LIMIT, build_timelines
from flakewatch.engine.models import (
    ExecutionRecord,
    FlakinessVerdict,
    ProjectAnalysis,
    TestStatus,
    TestTimeline,
)
from flakewatch.engine.stats import count_failures, mean, population_std_dev
from flakewatch.observability.metrics import CLASSIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_MIN_RUNS = 2

INTERMITTENT_LOWER = 0.1
INTERMITTENT_UPPER = 0.9
VARIATION_THRESHOLD = 0.5
ALTERNATING_THRESHOLD = 0.6

CONFIDENCE_FLOOR = 50.0
CONFIDENCE_CAP = 95.0

DISABLE_RECOMMENDATION = "Disable test until fixed"
RETRY_RECOMMENDATION = "Enable automatic retry"
STABLE_RECOMMENDATION = "No action needed"
INSUFFICIENT_RECOMMENDATION = "Collect more runs before classifying"

CRITICAL_FAILURE_RATE_PERCENT = 50.0
MANY_FLAKY_TESTS = 5
HIGH_AVG_FAILURE_RATE_PERCENT = 30.0


def _coefficient_of_variation(durations: list[float]) -> float:
    avg = mean(durations)
    if avg == 0:
        return 0.0
    return population_std_dev(durations) / avg


def _alternating_ratio(statuses: list[TestStatus]) -> float:
    if len(statuses) < 2:
        return 0.0
    transitions = sum(1 for prev, cur in zip(statuses, statuses[1:], strict=False) if prev != cur)
    return transitions / (len(statuses) - 1)


def classify(timeline: TestTimeline, min_runs: int = DEFAULT_MIN_RUNS) -> FlakinessVerdict:
    """Classify one timeline as flaky or stable.

    Args:
        timeline: Newest-first execution history for a single test.
        min_runs: Below this many runs the verdict is non-flaky by definition.

    Returns:
        A fresh FlakinessVerdict. ``confidence`` is in [50, 95] when flaky and
        0 otherwise.
    """
    records = list(timeline.records)
    total_runs = len(records)
    failures = count_failures(records)
    durations = [float(r.duration_millis) for r in records]
    last_failure = next((r.timestamp for r in records if r.status == TestStatus.FAILED), None)

    if total_runs < max(min_runs, 2):
        CLASSIFICATIONS_TOTAL.labels(result="insufficient_data").inc()
        return FlakinessVerdict(
            test_name=timeline.test_name,
            suite_name=timeline.suite_name,
            failure_rate_percent=(failures / total_runs * 100) if total_runs else 0.0,
            avg_duration_millis=round(mean(durations)),
            duration_std_dev_millis=round(population_std_dev(durations)),
            total_runs=total_runs,
            failure_count=failures,
            reasons=[f"Insufficient data ({total_runs} run(s), need at least {max(min_runs, 2)})"],
            confidence=0.0,
            is_flaky=False,
            recommendation=INSUFFICIENT_RECOMMENDATION,
            last_failure_at=last_failure,
        )

    rate = failures / total_runs
    avg_duration = mean(durations)
    std_dev = population_std_dev(durations)
    variation = _coefficient_of_variation(durations)
    alternating = _alternating_ratio([r.status for r in records])

    reasons: list[str] = []
    if INTERMITTENT_LOWER < rate < INTERMITTENT_UPPER:
        reasons.append(f"Intermittent failures ({rate * 100:.1f}% failure rate)")
    if variation > VARIATION_THRESHOLD:
        reasons.append(f"Inconsistent performance ({variation * 100:.1f}% variation)")
    if alternating > ALTERNATING_THRESHOLD and failures > 1:
        reasons.append(f"Alternating pass/fail pattern ({alternating * 100:.1f}%)")

    is_flaky = bool(reasons)
    if is_flaky:
        confidence = min(CONFIDENCE_CAP, CONFIDENCE_FLOOR + rate * 100 + variation * 50)
        recommendation = DISABLE_RECOMMENDATION if failures > total_runs * 0.5 else RETRY_RECOMMENDATION
    else:
        confidence = 0.0
        recommendation = STABLE_RECOMMENDATION

    CLASSIFICATIONS_TOTAL.labels(result="flaky" if is_flaky else "stable").inc()
    return FlakinessVerdict(
        test_name=timeline.test_name,
        suite_name=timeline.suite_name,
        failure_rate_percent=rate * 100,
        avg_duration_millis=round(avg_duration),
        duration_std_dev_millis=round(std_dev),
        total_runs=total_runs,
        failure_count=failures,
        reasons=reasons,
        confidence=confidence,
        is_flaky=is_flaky,
        recommendation=recommendation,
        last_failure_at=last_failure,
    )


def analyze_project(
    project_id: str,
    records: Iterable[ExecutionRecord],
    *,
    limit: int = DEFAULT_TIMELINE_LIMIT,
    min_runs: int = DEFAULT_MIN_RUNS,
) -> ProjectAnalysis:
    """Classify every test in a project and summarize the flaky ones."""
    timelines = build_timelines(project_id, records, limit=limit)
    verdicts = [classify(t, min_runs=min_runs) for t in timelines]
    flaky = sorted((v for v in verdicts if v.is_flaky), key=lambda v: v.confidence, reverse=True)

    total_tests = len(timelines)
    avg_failure_rate = mean([v.failure_rate_percent for v in flaky])

    recommendations = ["Enable automatic retry for flaky tests" if flaky else "No flaky tests detected"]
    if len(flaky) > MANY_FLAKY_TESTS:
        recommendations.append("Consider reviewing test infrastructure")
    if avg_failure_rate > HIGH_AVG_FAILURE_RATE_PERCENT:
        recommendations.append("High failure rate - investigate common causes")

    logger.info("Analyzed project %s: %d/%d tests flaky", project_id, len(flaky), total_tests)
    return ProjectAnalysis(
        project_id=project_id,
        total_tests=total_tests,
        flaky_tests=len(flaky),
        flaky_percentage=(len(flaky) / total_tests * 100) if total_tests else 0.0,
        avg_failure_rate=round(avg_failure_rate, 2),
        critical_tests=sum(1 for v in flaky if v.failure_rate_percent > CRITICAL_FAILURE_RATE_PERCENT),
        verdicts=flaky,
        recommendations=recommendations,
        analyzed_at=datetime.now(UTC),
    )
