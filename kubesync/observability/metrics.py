"""Prometheus metrics for kubesync."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Reconciliation cycle metrics
sync_cycles_total = Counter(
    "kubesync_sync_cycles_total",
    "Total reconciliation cycles by result",
    ["app", "result"],
)

sync_cycle_duration_seconds = Histogram(
    "kubesync_sync_cycle_duration_seconds",
    "Reconciliation cycle duration in seconds",
    ["app"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

drift_deltas_total = Counter(
    "kubesync_drift_deltas_total",
    "Total deltas produced by the differ",
    ["app", "delta_kind"],
)

ownership_violations_total = Counter(
    "kubesync_ownership_violations_total",
    "Desired resources found live without the ownership marker",
    ["app"],
)

out_of_sync_resources = Gauge(
    "kubesync_out_of_sync_resources",
    "Number of owned resources with pending drift",
    ["app"],
)

# Executor metrics
apply_results_total = Counter(
    "kubesync_apply_results_total",
    "Total delta apply outcomes",
    ["kind", "delta_kind", "outcome"],
)

apply_retries_total = Counter(
    "kubesync_apply_retries_total",
    "Total delta apply retries by error class",
    ["error_class"],
)

apply_backoff_seconds = Histogram(
    "kubesync_apply_backoff_seconds",
    "Backoff delay before a delta apply retry",
    buckets=(1.0, 5.0, 10.0, 20.0, 40.0, 80.0, 180.0),
)

stale_rebuilds_total = Counter(
    "kubesync_stale_rebuilds_total",
    "Deltas rebuilt because the live version moved before write",
    ["kind"],
)

# Store metrics
store_errors_total = Counter(
    "kubesync_store_errors_total",
    "Total errors raised by the desired-state source or live store",
    ["store", "error_class"],
)

# History persistence metrics
history_backpressure_total = Counter(
    "kubesync_history_backpressure_total",
    "Times SQLite history persistence fell back to in-memory only",
)

# Health metrics
app_health = Gauge(
    "kubesync_app_health",
    "Aggregate application health (1 for the current state, 0 otherwise)",
    ["app", "health"],
)

halted_resources = Gauge(
    "kubesync_halted_resources",
    "Resources excluded from auto-sync pending manual intervention",
    ["app"],
)

# Delivery metrics
rollouts_total = Counter(
    "kubesync_rollouts_total",
    "Total rollouts by final phase",
    ["release", "strategy", "phase"],
)

rollout_traffic_weight = Gauge(
    "kubesync_rollout_traffic_weight",
    "Traffic weight currently assigned to each release track",
    ["release", "track"],
)

# Autoscaler metrics
autoscale_decisions_total = Counter(
    "kubesync_autoscale_decisions_total",
    "Total autoscale decisions emitted",
    ["target", "direction"],
)

autoscale_suppressed_total = Counter(
    "kubesync_autoscale_suppressed_total",
    "Autoscale recommendations suppressed by damping",
    ["target", "reason"],
)

# Notification metrics
notifications_total = Counter(
    "kubesync_notifications_total",
    "Total notifications sent",
    ["channel", "success"],
)


def set_app_health(app: str, health: str) -> None:
    """Set the one-hot ``app_health`` gauge so exactly one state reads 1."""
    for state in ("unknown", "progressing", "healthy", "degraded"):
        app_health.labels(app=app, health=state).set(1.0 if state == health else 0.0)
