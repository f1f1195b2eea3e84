"""Infrastructure health checks: database and Celery broker."""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..config import get_settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a single component."""
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None


def check_database_health(db: Session) -> ComponentHealth:
    start = time.monotonic()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return ComponentHealth(status=HealthStatus.UNHEALTHY, message=f"Database error: {e}")

    return ComponentHealth(
        status=HealthStatus.HEALTHY,
        message="Database connection OK",
        latency_ms=round((time.monotonic() - start) * 1000, 2),
    )


def check_broker_health() -> ComponentHealth:
    """Ping the Celery broker that carries scheduled syncs.

    Only Redis brokers are pinged; other transports report DEGRADED with
    no check so /health does not fail on them.
    """
    broker_url = get_settings().CELERY_BROKER_URL
    if not broker_url.startswith(("redis://", "rediss://")):
        return ComponentHealth(
            status=HealthStatus.DEGRADED,
            message="Broker transport is not checked",
        )

    start = time.monotonic()
    try:
        client = redis.from_url(broker_url, socket_connect_timeout=2)
        client.ping()
    except redis.RedisError as e:
        logger.error(f"Broker health check failed: {e}")
        return ComponentHealth(status=HealthStatus.UNHEALTHY, message=f"Broker error: {e}")

    return ComponentHealth(
        status=HealthStatus.HEALTHY,
        message="Broker connection OK",
        latency_ms=round((time.monotonic() - start) * 1000, 2),
    )


def get_overall_health(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Worst component status wins."""
    if all(c.status == HealthStatus.HEALTHY for c in components.values()):
        return HealthStatus.HEALTHY

    if any(c.status == HealthStatus.UNHEALTHY for c in components.values()):
        return HealthStatus.UNHEALTHY

    return HealthStatus.DEGRADED
