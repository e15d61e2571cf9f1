"""Prometheus metrics for kubemeta."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Named counters/gauges mirrored from Stats
metadata_events_total = Counter(
    "kubemeta_metadata_events_total",
    "Total metadata cache events by name",
    ["event"],
)

metadata_gauge = Gauge(
    "kubemeta_metadata_gauge",
    "Last value set for a named metadata gauge",
    ["name"],
)

# Cache metrics
cache_entries = Gauge(
    "kubemeta_cache_entries",
    "Number of live entries per cache",
    ["cache"],
)

cache_compute_total = Counter(
    "kubemeta_cache_compute_total",
    "Total get_or_compute invocations that ran the compute function",
    ["cache"],
)

cache_compute_shared_total = Counter(
    "kubemeta_cache_compute_shared_total",
    "Total get_or_compute callers that awaited an in-flight computation",
    ["cache"],
)

# Resolver metrics
resolve_duration_seconds = Histogram(
    "kubemeta_resolve_duration_seconds",
    "Metadata resolution duration in seconds",
    ["strategy", "path"],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

# Watcher metrics
watcher_events_total = Counter(
    "kubemeta_watcher_events_total",
    "Total watch events received by type",
    ["watcher", "event_type"],
)

watcher_reconnects_total = Counter(
    "kubemeta_watcher_reconnects_total",
    "Total watcher reconnection attempts",
    ["watcher", "reason"],
)

watcher_relistings_total = Counter(
    "kubemeta_watcher_relistings_total",
    "Total watcher list operations",
    ["watcher"],
)

watcher_errors_total = Counter(
    "kubemeta_watcher_errors_total",
    "Total watcher errors",
    ["watcher", "kind"],
)

watcher_backoff_seconds = Histogram(
    "kubemeta_watcher_backoff_seconds",
    "Watcher backoff duration in seconds",
    ["watcher"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

# Checkpoint metrics
checkpoint_rows_written_total = Counter(
    "kubemeta_checkpoint_rows_written_total",
    "Total cache rows written to the checkpoint database",
    ["table"],
)

checkpoint_failures_total = Counter(
    "kubemeta_checkpoint_failures_total",
    "Total checkpoint write/restore failures",
    ["operation"],
)
