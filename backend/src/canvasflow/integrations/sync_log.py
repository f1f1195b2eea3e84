"""Sync Log - append-only history of sync attempts.

Admission control lives here: inserting an open entry is the atomic
"is a sync already running?" check, enforced by the partial unique index
on sync_log_entry(connection_id) WHERE finished_at IS NULL.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import SyncLogEntry, SyncLogImmutableError, SyncOutcome
from ..models.base import utcnow
from .errors import AlreadyInProgressError


logger = logging.getLogger(__name__)

# Error code for entries whose run never finalized
STALE_ERROR_CODE = "TIMEOUT"


class SyncLog:
    """Reads and writes SyncLogEntry rows for one database session."""

    def __init__(self, db: Session):
        self.db = db

    def get_open_entry(self, connection_id: UUID) -> Optional[SyncLogEntry]:
        stmt = select(SyncLogEntry).where(
            SyncLogEntry.connection_id == connection_id,
            SyncLogEntry.finished_at.is_(None),
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def append_entry(self, entry: SyncLogEntry) -> SyncLogEntry:
        """
        Insert and commit an open entry.

        Raises:
            AlreadyInProgressError: Another open entry exists for the connection
        """
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self.get_open_entry(entry.connection_id) is not None:
                raise AlreadyInProgressError(
                    "A sync is already in progress for this integration",
                    details={"connection_id": str(entry.connection_id)},
                )
            raise

        logger.debug(
            "Sync log entry opened",
            extra={"sync_log_id": str(entry.id), "connection_id": str(entry.connection_id)},
        )
        return entry

    def finish_entry(
        self,
        entry: SyncLogEntry,
        outcome: SyncOutcome,
        items_processed: int = 0,
        items_failed: int = 0,
        items_orphaned: int = 0,
        error_code: Optional[str] = None,
        error_detail: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
        finished_at: Optional[datetime] = None,
    ) -> SyncLogEntry:
        """Close an open entry. This is the only update an entry ever receives."""
        if not entry.is_open:
            raise SyncLogImmutableError(
                f"Sync log entry {entry.id} is finished and cannot be modified"
            )

        finished_at = finished_at or utcnow()
        entry.finished_at = finished_at
        entry.outcome = SyncOutcome(outcome).value
        entry.items_processed = items_processed
        entry.items_failed = items_failed
        entry.items_orphaned = items_orphaned
        entry.error_code = error_code
        entry.error_detail = error_detail
        entry.details = list(details or [])
        entry.duration_ms = max(0, int((finished_at - entry.started_at).total_seconds() * 1000))
        self.db.commit()

        return entry

    def close_stale_entries(
        self,
        max_age: timedelta,
        connection_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> List[SyncLogEntry]:
        """
        Close open entries started more than max_age ago as FAILED/TIMEOUT.

        An open entry outlives its run only when the process died before
        finalizing; left alone it would block admission for good.

        Returns:
            The entries that were closed
        """
        now = now or utcnow()
        stmt = select(SyncLogEntry).where(
            SyncLogEntry.finished_at.is_(None),
            SyncLogEntry.started_at < now - max_age,
        )
        if connection_id is not None:
            stmt = stmt.where(SyncLogEntry.connection_id == connection_id)

        closed: List[SyncLogEntry] = []
        for entry in self.db.execute(stmt).scalars().all():
            try:
                self.finish_entry(
                    entry,
                    SyncOutcome.FAILED,
                    error_code=STALE_ERROR_CODE,
                    error_detail=f"Sync did not finish within {int(max_age.total_seconds())}s",
                    finished_at=now,
                )
            except SyncLogImmutableError:
                # Closed concurrently by another worker
                self.db.rollback()
                continue
            closed.append(entry)
            logger.warning(
                "Stale sync log entry closed",
                extra={
                    "sync_log_id": str(entry.id),
                    "connection_id": str(entry.connection_id),
                    "error_code": STALE_ERROR_CODE,
                },
            )
        return closed

    def get_recent_entries(self, connection_id: UUID, limit: int = 10) -> List[SyncLogEntry]:
        """Entries for a connection, newest first."""
        stmt = (
            select(SyncLogEntry)
            .where(SyncLogEntry.connection_id == connection_id)
            .order_by(SyncLogEntry.started_at.desc(), SyncLogEntry.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def prune_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete finished entries that finished before now - retention.

        Open entries are never pruned.

        Returns:
            Number of entries deleted
        """
        cutoff = (now or utcnow()) - retention
        stmt = delete(SyncLogEntry).where(
            SyncLogEntry.finished_at.is_not(None),
            SyncLogEntry.finished_at < cutoff,
        )
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        self.db.commit()

        logger.info(
            "Sync log pruned",
            extra={"deleted": result.rowcount, "cutoff": cutoff.isoformat()},
        )
        return result.rowcount
