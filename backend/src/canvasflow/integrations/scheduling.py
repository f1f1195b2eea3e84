"""Frequency-based scheduling of sync runs.

No scheduler runs in-process; the Celery beat schedule calls
run_due_syncs() periodically and this module decides which connections
are due.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import IntegrationConnection, SyncFrequency
from ..models.base import utcnow
from .errors import AlreadyInProgressError, IntegrationError
from .executor import SyncExecutor


logger = logging.getLogger(__name__)

FREQUENCY_INTERVALS: Dict[str, timedelta] = {
    SyncFrequency.REALTIME.value: timedelta(minutes=5),
    SyncFrequency.HOURLY.value: timedelta(hours=1),
    SyncFrequency.DAILY.value: timedelta(days=1),
    SyncFrequency.WEEKLY.value: timedelta(days=7),
}


@dataclass
class ScheduleSummary:
    due: int = 0
    started: int = 0
    skipped_in_progress: int = 0
    recovered: int = 0
    errors: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "due": self.due,
            "started": self.started,
            "skipped_in_progress": self.skipped_in_progress,
            "recovered": self.recovered,
            "errors": self.errors,
            "outcomes": dict(self.outcomes),
        }


def next_sync_due(connection: IntegrationConnection, now: Optional[datetime] = None) -> Optional[datetime]:
    """When the connection should next sync; None for manual connections.

    A connection that has never synced is due immediately.
    """
    interval = FREQUENCY_INTERVALS.get(connection.sync_frequency)
    if interval is None:
        return None
    if connection.last_sync_at is None:
        return now or utcnow()
    return connection.last_sync_at + interval


def find_due_connections(db: Session, now: Optional[datetime] = None) -> List[IntegrationConnection]:
    """Enabled, non-manual connections whose next sync time has passed."""
    now = now or utcnow()
    stmt = (
        select(IntegrationConnection)
        .where(
            IntegrationConnection.enabled.is_(True),
            IntegrationConnection.sync_frequency != SyncFrequency.MANUAL.value,
        )
        .order_by(IntegrationConnection.last_sync_at.is_not(None), IntegrationConnection.last_sync_at)
    )

    due = []
    for connection in db.execute(stmt).scalars():
        next_due = next_sync_due(connection, now)
        if next_due is not None and next_due <= now:
            due.append(connection)
    return due


def run_due_syncs(db: Session, executor: Optional[SyncExecutor] = None, now: Optional[datetime] = None) -> ScheduleSummary:
    """Run every due connection once, on behalf of its owner.

    Entries abandoned by a dead worker are closed first so their
    connections can be admitted again.
    """
    executor = executor or SyncExecutor(db)
    summary = ScheduleSummary()
    summary.recovered = executor.recover_stale_entries()

    for connection in find_due_connections(db, now):
        summary.due += 1
        try:
            entry = executor.run(connection.id, connection.user_id)
        except AlreadyInProgressError:
            summary.skipped_in_progress += 1
            continue
        except IntegrationError as e:
            summary.errors += 1
            logger.warning(
                f"Scheduled sync not started: {e.message}",
                extra={"connection_id": str(connection.id), "provider_id": connection.provider_id},
            )
            continue

        summary.started += 1
        summary.outcomes[entry.outcome] = summary.outcomes.get(entry.outcome, 0) + 1

    logger.info("Scheduled sync sweep finished", extra={"count": summary.due})
    return summary
