"""Celery tasks for scheduled syncs and sync log retention.

The beat schedule is configured by the worker deployment, e.g.:

    from celery.schedules import crontab

    celery_app.conf.beat_schedule = {
        'integrations-run-due-syncs': {
            'task': 'integrations.run_due_syncs',
            'schedule': 60.0,
        },
        'integrations-prune-sync-logs': {
            'task': 'integrations.prune_sync_logs',
            'schedule': crontab(hour=3, minute=0),
        },
    }
"""

import logging
from datetime import timedelta
from typing import Any, Dict

from celery import shared_task

from .. import database
from ..config import get_settings
from ..observability.request_id import correlation_scope
from .scheduling import run_due_syncs
from .sync_log import SyncLog

logger = logging.getLogger(__name__)


@shared_task(name="integrations.run_due_syncs")
def run_due_syncs_task() -> Dict[str, Any]:
    """Sync every enabled connection whose frequency says it is due."""
    with correlation_scope("task"):
        with database.get_db_session() as db:
            summary = run_due_syncs(db)

        result = summary.to_dict()
        logger.info("Scheduled sync task completed", extra={"count": result["started"]})
    return result


@shared_task(name="integrations.prune_sync_logs")
def prune_sync_logs_task() -> Dict[str, Any]:
    """Delete finished sync log entries past the retention window."""
    retention_days = get_settings().SYNC_LOG_RETENTION_DAYS

    with correlation_scope("task"):
        with database.get_db_session() as db:
            deleted = SyncLog(db).prune_older_than(timedelta(days=retention_days))

    return {"status": "completed", "deleted": deleted, "retention_days": retention_days}
