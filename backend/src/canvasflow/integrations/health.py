"""Status Aggregator - read-only health view of a connection."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..config import get_settings
from ..models import ConnectionStatus, SyncOutcome
from .store import ConnectionStore
from .sync_log import SyncLog


SYNCING = "syncing"

_SUCCESSFUL = (SyncOutcome.SUCCEEDED.value, SyncOutcome.PARTIAL.value)


@dataclass
class ConnectionHealth:
    """
    Attributes:
        status: disabled | syncing | error | connected | pending
        last_success_at: Finish time of the newest succeeded/partial attempt in the scan window
        consecutive_failures: Failed attempts since the last success (bounded by the scan window)
        last_error / last_error_code: From the connection
        last_sync_at: When the newest attempt finished
        last_health_check_at: When the connection was last tested
    """
    connection_id: UUID
    status: str
    last_success_at: Optional[datetime]
    consecutive_failures: int
    last_error: Optional[str]
    last_error_code: Optional[str]
    last_sync_at: Optional[datetime]
    last_health_check_at: Optional[datetime]


class StatusAggregator:
    def __init__(self, db: Session, store: Optional[ConnectionStore] = None, scan_window: Optional[int] = None):
        self.db = db
        self.store = store or ConnectionStore(db)
        self.sync_log = SyncLog(db)
        self.scan_window = scan_window or get_settings().SYNC_HEALTH_SCAN_WINDOW

    def get_connection_health(self, connection_id: UUID, requesting_user_id: UUID) -> ConnectionHealth:
        """Summarise a connection's recent sync history. Never writes."""
        connection = self.store.get_connection(connection_id, requesting_user_id)
        entries = self.sync_log.get_recent_entries(connection.id, limit=self.scan_window)

        consecutive_failures = 0
        last_success_at = None
        syncing = False
        for entry in entries:
            if entry.is_open:
                syncing = True
                continue
            if entry.outcome in _SUCCESSFUL:
                last_success_at = entry.finished_at
                break
            consecutive_failures += 1

        if not connection.enabled:
            status = ConnectionStatus.DISABLED.value
        elif syncing:
            status = SYNCING
        else:
            status = connection.sync_status

        return ConnectionHealth(
            connection_id=connection.id,
            status=status,
            last_success_at=last_success_at,
            consecutive_failures=consecutive_failures,
            last_error=connection.last_error,
            last_error_code=connection.last_error_code,
            last_sync_at=connection.last_sync_at,
            last_health_check_at=connection.last_health_check_at,
        )
