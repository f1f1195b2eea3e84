"""SQLAlchemy Models for CanvasFlow integrations"""

from .base import Base, PortableJSONB, UTCDateTime
from .integration_connection import (
    IntegrationConnection,
    ConnectionStatus,
    SyncDirection,
    SyncFrequency,
)
from .sync_log_entry import SyncLogEntry, SyncOutcome, SyncLogImmutableError
from .synced_record import SyncedRecord, content_hash

__all__ = [
    "Base",
    "PortableJSONB",
    "UTCDateTime",
    "IntegrationConnection",
    "ConnectionStatus",
    "SyncDirection",
    "SyncFrequency",
    "SyncLogEntry",
    "SyncOutcome",
    "SyncLogImmutableError",
    "SyncedRecord",
    "content_hash",
]
