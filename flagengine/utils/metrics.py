"""Prometheus metrics registration for the flag engine.

All metric objects are defined at import time in the default registry.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Evaluation
# =============================================================================

flag_evaluations_total = Counter(
    "flag_evaluations_total",
    "Number of flag evaluations served",
    ["reason"],
)

flag_evaluation_errors_total = Counter(
    "flag_evaluation_errors_total",
    "Internal errors swallowed on the evaluation path",
    ["stage"],  # evaluator | cache | client
)

flag_missing_subject_total = Counter(
    "flag_missing_subject_total",
    "Percentage rollouts evaluated without a subject id",
)

flag_evaluation_duration_seconds = Histogram(
    "flag_evaluation_duration_seconds",
    "Local flag evaluation latency",
    buckets=[0.00001, 0.00005, 0.0001, 0.0005, 0.001, 0.005, 0.01],
)

# =============================================================================
# Store
# =============================================================================

flag_store_updates_total = Counter(
    "flag_store_updates_total",
    "Flag store write attempts",
    ["status"],  # accepted | rejected
)

flag_store_snapshot_version = Gauge(
    "flag_store_snapshot_version",
    "Version of the snapshot currently published by the store",
)

# =============================================================================
# Propagation cache
# =============================================================================

flag_cache_refresh_total = Counter(
    "flag_cache_refresh_total",
    "Propagation cache refresh cycles",
    ["status"],  # success | failure | unchanged
)

flag_cache_staleness_seconds = Gauge(
    "flag_cache_staleness_seconds",
    "Seconds since the cache last refreshed successfully",
)

flag_cache_stale = Gauge(
    "flag_cache_stale",
    "1 when the cached snapshot exceeds max staleness",
)

flag_cache_snapshot_version = Gauge(
    "flag_cache_snapshot_version",
    "Version of the snapshot the cache is serving",
)

# =============================================================================
# Analytics
# =============================================================================

flag_analytics_enqueued_total = Counter(
    "flag_analytics_enqueued_total",
    "Evaluation records enqueued for analytics",
)

flag_analytics_dropped_total = Counter(
    "flag_analytics_dropped_total",
    "Evaluation records dropped because the queue was full",
)

flag_analytics_flushed_total = Counter(
    "flag_analytics_flushed_total",
    "Evaluation records delivered to the analytics sink",
)

flag_analytics_failed_total = Counter(
    "flag_analytics_failed_total",
    "Evaluation records lost to sink failures",
)
