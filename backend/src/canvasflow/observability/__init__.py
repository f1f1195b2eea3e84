"""Observability module for CanvasFlow.

Provides structured logging, Prometheus metrics and health checks.
"""

from .logging_config import configure_logging
from .metrics import (
    provider_fetch_retries_total,
    sync_admission_rejected_total,
    sync_duration_seconds,
    sync_items_total,
    sync_runs_total,
)
from .request_id import (
    correlation_scope,
    generate_request_id,
    get_request_id,
    normalize_request_id,
    request_id_var,
    set_request_id,
)
from .health import HealthStatus, ComponentHealth
from .middleware import RequestIDMiddleware

__all__ = [
    # Logging
    "configure_logging",
    # Metrics
    "provider_fetch_retries_total",
    "sync_admission_rejected_total",
    "sync_duration_seconds",
    "sync_items_total",
    "sync_runs_total",
    # Request ID
    "request_id_var",
    "get_request_id",
    "set_request_id",
    "generate_request_id",
    "normalize_request_id",
    "correlation_scope",
    # Health
    "HealthStatus",
    "ComponentHealth",
    # Middleware
    "RequestIDMiddleware",
]
