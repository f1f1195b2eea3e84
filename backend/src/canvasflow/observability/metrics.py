"""Prometheus metrics for CanvasFlow integration syncs.

Defines and exposes operational metrics for monitoring and alerting.
"""

from prometheus_client import Counter, Histogram

# Sync run metrics
sync_runs_total = Counter(
    "canvasflow_sync_runs_total",
    "Total sync runs by terminal outcome",
    ["provider", "outcome"]  # outcome: succeeded|partial|failed
)

sync_duration_seconds = Histogram(
    "canvasflow_sync_duration_seconds",
    "Wall time of a sync run from admission to finalize",
    ["provider"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

sync_items_total = Counter(
    "canvasflow_sync_items_total",
    "Items handled during the WRITING phase",
    ["provider", "result"]  # result: written|failed|orphaned
)

provider_fetch_retries_total = Counter(
    "canvasflow_provider_fetch_retries_total",
    "Transient fetch failures that were retried",
    ["provider"]
)

sync_admission_rejected_total = Counter(
    "canvasflow_sync_admission_rejected_total",
    "Sync triggers rejected because a run was already in progress",
    ["provider"]
)
