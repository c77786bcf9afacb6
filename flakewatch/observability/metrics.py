"""Prometheus metric definitions for flakewatch self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
RECONCILE_DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0)

# ---------------------------------------------------------------------------
# Request-level metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "flakewatch_request_duration_seconds",
    "End-to-end request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "flakewatch_requests_total",
    "Total number of requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Engine metrics
# ---------------------------------------------------------------------------

CLASSIFICATIONS_TOTAL = Counter(
    "flakewatch_classifications_total",
    "Total number of timeline classifications",
    labelnames=["result"],  # flaky | stable | insufficient_data
)

QUARANTINE_TRANSITIONS_TOTAL = Counter(
    "flakewatch_quarantine_transitions_total",
    "Total number of quarantine lifecycle transitions",
    labelnames=["action", "trigger"],  # trigger: auto | manual
)

RESOLUTIONS_RECORDED_TOTAL = Counter(
    "flakewatch_resolutions_recorded_total",
    "Total number of recorded pattern resolutions",
    labelnames=["strategy"],
)

VERIFICATIONS_TOTAL = Counter(
    "flakewatch_verifications_total",
    "Total number of verification attempts by outcome",
    labelnames=["outcome"],  # verified | regression-detected | not-due | duplicate | unavailable
)

# ---------------------------------------------------------------------------
# Reconciliation metrics
# ---------------------------------------------------------------------------

RECONCILE_RUNS_TOTAL = Counter(
    "flakewatch_reconcile_runs_total",
    "Total number of verification reconciliation scans",
    labelnames=["trigger", "status"],
)

RECONCILE_DURATION = Histogram(
    "flakewatch_reconcile_duration_seconds",
    "Time taken by a reconciliation scan in seconds",
    buckets=RECONCILE_DURATION_BUCKETS,
)

PENDING_VERIFICATIONS = Gauge(
    "flakewatch_pending_verifications",
    "Resolutions due for verification at the last scan",
)

# ---------------------------------------------------------------------------
# Health / info metrics
# ---------------------------------------------------------------------------

COMPONENT_HEALTHY = Gauge(
    "flakewatch_component_healthy",
    "Whether a dependency component is healthy (1=healthy, 0=unhealthy)",
    labelnames=["component"],
)

APP_INFO = Info(
    "flakewatch",
    "Flakewatch build information",
)
