"""
Operational metrics for the usage threshold engine.

Prometheus counters and histograms covering the hot-path caches, enforcement
decisions, notification outcomes and the reconciliation sweep.
"""

from prometheus_client import Counter, Histogram

# --- Hot Path ---
LIMIT_CHECK_CACHE_EVENTS = Counter(
    "usage_guard_limit_check_cache_events_total",
    "Limit check cache lookups by cache and result",
    ["cache", "result"],  # cache: rules|consumption, result: hit|miss
)

LIMIT_CHECK_CACHE_INVALIDATIONS = Counter(
    "usage_guard_limit_check_cache_invalidations_total",
    "Limit check cache invalidations by trigger",
    ["trigger"],  # rule_change|ingest
)

LIMIT_EXCEEDED_DECISIONS = Counter(
    "usage_guard_limit_exceeded_total",
    "Number of limit checks that reported an exceeded block rule",
    ["metric_type", "period"],
)

# --- Notifications ---
THRESHOLD_NOTIFICATIONS = Counter(
    "usage_guard_threshold_notifications_total",
    "Threshold notification attempts by evaluation path and outcome",
    ["path", "outcome"],  # path: hot|sweep, outcome: sent|logged_no_email|send_failed|duplicate
)

# --- Reconciliation Sweep ---
THRESHOLD_SWEEP_RUNS = Counter(
    "usage_guard_threshold_sweep_runs_total",
    "Reconciliation sweep executions by status",
    ["status"],  # success|failure
)

THRESHOLD_SWEEP_RULE_ERRORS = Counter(
    "usage_guard_threshold_sweep_rule_errors_total",
    "Rules that raised during a reconciliation sweep",
)

THRESHOLD_SWEEP_DURATION = Histogram(
    "usage_guard_threshold_sweep_duration_seconds",
    "Duration of a full reconciliation sweep",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)
