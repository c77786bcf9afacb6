"""Pydantic models and enums for execution records, verdicts, quarantine and resolutions."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, ClassVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

SYSTEM_ACTOR = "system"


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so window arithmetic never mixes kinds."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def make_test_id(project_id: str, test_name: str) -> str:
    """Stable quarantine key for a test within a project."""
    return f"{project_id}::{test_name}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TestStatus(StrEnum):
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class QuarantineStatus(StrEnum):
    ACTIVE = "active"
    QUARANTINED = "quarantined"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


class QuarantineAction(StrEnum):
    QUARANTINE = "quarantine"  # active/resolved -> quarantined
    RELEASE = "release"  # quarantined -> active (operator override)
    CLAIM_FIX = "claim-fix"  # quarantined -> monitoring
    CONFIRM_FIX = "confirm-fix"  # monitoring -> resolved
    DETECT_REGRESSION = "detect-regression"  # monitoring -> quarantined
    RESOLVE = "resolve"  # quarantined -> resolved (operator override only)


class ResolutionStrategy(StrEnum):
    QUICK_FIX = "quick-fix"
    SYSTEMATIC_CHANGE = "systematic-change"
    PROCESS_IMPROVEMENT = "process-improvement"
    INFRASTRUCTURE_UPGRADE = "infrastructure-upgrade"


class EffortLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VerificationStatus(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REGRESSION_DETECTED = "regression-detected"


class PatternType(StrEnum):
    INFRASTRUCTURE = "infrastructure"
    DEPENDENCY = "dependency"
    ENVIRONMENTAL = "environmental"
    TEMPORAL = "temporal"
    FRAMEWORK = "framework"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Execution history
# ---------------------------------------------------------------------------


class ExecutionRecord(BaseModel):
    """One test's outcome within one CI run, already normalized by ingestion."""

    model_config = ConfigDict(frozen=True)

    project_id: str = Field(min_length=1)
    test_name: str = Field(min_length=1)
    suite_name: str = ""
    status: TestStatus
    duration_millis: int = Field(ge=0)
    timestamp: UtcDatetime
    error_message: str | None = None
    stack_trace: str | None = None
    retry_count: int = Field(default=0, ge=0)


class TestTimeline(BaseModel):
    """Newest-first execution history for one (project, test) pair."""

    __test__: ClassVar[bool] = False
    model_config = ConfigDict(frozen=True)

    project_id: str
    test_name: str
    suite_name: str = ""
    records: tuple[ExecutionRecord, ...]


class FlakinessVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    test_name: str
    suite_name: str = ""
    failure_rate_percent: float
    avg_duration_millis: float
    duration_std_dev_millis: float
    total_runs: int
    failure_count: int
    reasons: list[str]
    confidence: float
    is_flaky: bool
    recommendation: str
    last_failure_at: datetime | None = None


class ProjectAnalysis(BaseModel):
    project_id: str
    total_tests: int
    flaky_tests: int
    flaky_percentage: float
    avg_failure_rate: float
    critical_tests: int
    verdicts: list[FlakinessVerdict]
    recommendations: list[str]
    analyzed_at: datetime


# ---------------------------------------------------------------------------
# Quarantine
# ---------------------------------------------------------------------------


class QuarantineRecord(BaseModel):
    test_id: str
    project_id: str
    status: QuarantineStatus = QuarantineStatus.ACTIVE
    reason: str = ""
    quarantined_at: datetime | None = None
    quarantined_by: str | None = None
    updated_at: datetime


class QuarantineEvent(BaseModel):
    """One entry in a test's append-only quarantine audit trail."""

    model_config = ConfigDict(frozen=True)

    test_id: str
    project_id: str
    action: QuarantineAction
    from_status: QuarantineStatus
    to_status: QuarantineStatus
    reason: str
    actor: str
    occurred_at: datetime
    resolution_id: str | None = None


class QuarantineStats(BaseModel):
    project_id: str
    total_quarantined: int
    auto_quarantined: int
    manual_quarantined: int
    auto_released: int
    currently_quarantined: int
    currently_monitoring: int
    resolved: int


# ---------------------------------------------------------------------------
# Resolutions
# ---------------------------------------------------------------------------


class EffectivenessMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    failure_reduction_percent: float = 0.0
    stability_improvement: float = 0.0
    cost_savings: float = 0.0
    # None means the post-fix window never reached the stabilization threshold
    time_to_stabilization_days: int | None = None


class ResolutionRequest(BaseModel):
    """Validated input for recording a remediation action."""

    model_config = ConfigDict(extra="forbid")

    resolution_strategy: ResolutionStrategy
    estimated_effort: EffortLevel
    actions_taken: list[str] = Field(default_factory=list)
    resolution_notes: str = ""
    actual_effort_hours: float = Field(default=0.0, ge=0)
    related_patterns: list[str] = Field(default_factory=list)
    project_id: str | None = None
    affected_tests: list[str] = Field(default_factory=list)
    pattern_type: PatternType = PatternType.UNKNOWN


class ResolutionRecord(BaseModel):
    id: str
    pattern_id: str
    organization_id: str
    project_id: str | None = None
    resolved_by: str
    resolution_notes: str = ""
    actions_taken: list[str] = Field(default_factory=list)
    resolution_strategy: ResolutionStrategy
    pattern_type: PatternType = PatternType.UNKNOWN
    estimated_effort: EffortLevel
    actual_effort_hours: float = 0.0
    affected_tests: list[str] = Field(default_factory=list)
    resolved_at: UtcDatetime
    due_at: UtcDatetime
    verified_at: UtcDatetime | None = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    effectiveness: EffectivenessMetrics = Field(default_factory=EffectivenessMetrics)
    follow_up_required: bool = False
    follow_up_notes: str | None = None
    related_patterns: list[str] = Field(default_factory=list)


class ReconcileSummary(BaseModel):
    scanned: int = 0
    verified: int = 0
    regressions: int = 0
    unavailable: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Aggregate reporting
# ---------------------------------------------------------------------------


class StrategyEffectiveness(BaseModel):
    strategy: ResolutionStrategy
    total: int
    successful: int
    success_rate: float
    avg_cost_savings: float


class RecurrencePattern(BaseModel):
    pattern_type: PatternType
    distinct_patterns: int
    recurring_patterns: int
    recurrence_rate: float
    avg_days_between_occurrences: float
    last_occurrence: datetime
    suggested_preventive_measures: list[str]


class RecurrenceTrend(BaseModel):
    patterns: list[RecurrencePattern]
    overall_trend: str  # improving | stable | deteriorating


class EffectivenessSummary(BaseModel):
    organization_id: str
    period_start: datetime
    period_end: datetime
    total_resolutions: int = 0
    pending_resolutions: int = 0
    successful_resolutions: int = 0
    regressions: int = 0
    regression_rate: float = 0.0
    avg_time_to_resolution_hours: float = 0.0
    avg_time_to_verification_hours: float = 0.0
    cost_savings_realized: float = 0.0
    most_effective_strategies: list[StrategyEffectiveness] = Field(default_factory=list)
    pattern_recurrence_rate: float = 0.0
    recommended_improvements: list[str] = Field(default_factory=list)


class ProactiveRecommendations(BaseModel):
    immediate: list[str] = Field(default_factory=list)
    preventive: list[str] = Field(default_factory=list)
    strategic: list[str] = Field(default_factory=list)
    tooling: list[str] = Field(default_factory=list)
