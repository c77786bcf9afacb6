"""Population statistics over execution records.

All helpers return 0.0 on empty input instead of raising, so callers can feed
degenerate windows straight through.
"""

import statistics
from collections.abc import Iterable, Sequence
from datetime import date

from flakewatch.engine.models import ExecutionRecord, TestStatus


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return statistics.fmean(values)


def population_variance(values: Sequence[float]) -> float:
    """Variance dividing by N, not N-1."""
    if not values:
        return 0.0
    return statistics.pvariance(values)


def population_std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return statistics.pstdev(values)


def count_failures(records: Iterable[ExecutionRecord]) -> int:
    return sum(1 for r in records if r.status == TestStatus.FAILED)


def failure_rate(records: Sequence[ExecutionRecord]) -> float:
    """Fraction of records that failed (0.0-1.0)."""
    if not records:
        return 0.0
    return count_failures(records) / len(records)


def group_by_day(records: Iterable[ExecutionRecord]) -> dict[date, list[ExecutionRecord]]:
    """Bucket records by UTC calendar day, keys in chronological order."""
    days: dict[date, list[ExecutionRecord]] = {}
    for record in sorted(records, key=lambda r: r.timestamp):
        days.setdefault(record.timestamp.date(), []).append(record)
    return days


def daily_failure_rate_variance(records: Sequence[ExecutionRecord]) -> float:
    """Variance of per-day failure rates. Fewer than two days of data yields 0.0."""
    rates = [failure_rate(day) for day in group_by_day(records).values()]
    if len(rates) < 2:
        return 0.0
    return population_variance(rates)
