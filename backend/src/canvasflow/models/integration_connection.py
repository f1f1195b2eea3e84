"""Integration connection model - a user's configured link to one provider.

Column ownership is split between two writers:
- the owning user: credentials, settings, direction, frequency, enabled
- the sync executor: sync_status, last_sync_at, last_error*, stats, last_health_check_at
"""

import uuid
from enum import Enum

from sqlalchemy import (
    Column,
    Text,
    String,
    Boolean,
    LargeBinary,
    Index,
    Uuid,
    case,
    text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship, validates

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class ConnectionStatus(str, Enum):
    """Public connection status."""
    PENDING = "pending"
    CONNECTED = "connected"
    ERROR = "error"
    DISABLED = "disabled"


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"


class SyncFrequency(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


# Values the executor may write to sync_status ("disabled" is derived from enabled)
EXECUTOR_STATUSES = (
    ConnectionStatus.PENDING.value,
    ConnectionStatus.CONNECTED.value,
    ConnectionStatus.ERROR.value,
)


def _default_stats() -> dict:
    return {
        "total_syncs": 0,
        "successful_syncs": 0,
        "partial_syncs": 0,
        "failed_syncs": 0,
        "items_synced": 0,
        "last_sync_duration_ms": None,
    }


class IntegrationConnection(Base):
    """A user's connection to an external provider.

    Attributes:
        id: Primary key UUID
        user_id: Owning user (identity issued by the auth platform)
        provider_id: Provider catalog id (e.g. 'trendyol', 'shop-x')
        category: Provider category, denormalised for list filtering
        credentials_encrypted: AES-256-GCM blob of the validated credential variant
        settings: Optional provider settings (user-owned)
        sync_direction: pull | push | bidirectional
        sync_frequency: realtime | hourly | daily | weekly | manual
        enabled: User-owned switch; disabled connections never sync
        single_connection: Copied from the provider; at most one enabled row per
            (user, provider) when true
        sync_status: Executor-owned status (pending | connected | error)
        last_sync_at: When the last sync attempt finished
        last_error / last_error_code: Most recent failure, cleared on success
        last_health_check_at: When the connection was last tested
        stats: Running counters across all sync attempts
    """

    __tablename__ = "integration_connection"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False)
    provider_id = Column(String(64), nullable=False)
    category = Column(String(32), nullable=False)

    credentials_encrypted = Column(LargeBinary, nullable=False)
    settings = Column(PortableJSONB, nullable=False, default=dict)
    sync_direction = Column(String(16), nullable=False, default=SyncDirection.BIDIRECTIONAL.value)
    sync_frequency = Column(String(16), nullable=False, default=SyncFrequency.HOURLY.value)
    enabled = Column(Boolean, nullable=False, default=True)
    single_connection = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Provider allows one active connection per user; set at creation",
    )

    sync_status = Column(String(16), nullable=False, default=ConnectionStatus.PENDING.value)
    last_sync_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_code = Column(String(64), nullable=True)
    last_health_check_at = Column(UTCDateTime, nullable=True)
    stats = Column(PortableJSONB, nullable=False, default=_default_stats)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    sync_logs = relationship(
        "SyncLogEntry",
        back_populates="connection",
        cascade="all, delete-orphan",
        order_by="SyncLogEntry.started_at.desc()",
    )
    synced_records = relationship(
        "SyncedRecord",
        back_populates="connection",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_integration_connection_user", user_id, created_at.desc()),
        Index("idx_integration_connection_user_provider", user_id, provider_id, enabled),
        Index(
            "uq_integration_connection_active_single",
            user_id,
            provider_id,
            unique=True,
            postgresql_where=text("enabled AND single_connection"),
            sqlite_where=text("enabled = 1 AND single_connection = 1"),
        ),
    )

    @hybrid_property
    def status(self) -> str:
        if not self.enabled:
            return ConnectionStatus.DISABLED.value
        return self.sync_status

    @status.expression
    def status(cls):
        return case(
            (cls.enabled.is_(False), ConnectionStatus.DISABLED.value),
            else_=cls.sync_status,
        )

    @validates('sync_direction')
    def validate_sync_direction(self, key, value):
        return SyncDirection(value).value

    @validates('sync_frequency')
    def validate_sync_frequency(self, key, value):
        return SyncFrequency(value).value

    @validates('sync_status')
    def validate_sync_status(self, key, value):
        if value not in EXECUTOR_STATUSES:
            raise ValueError(
                f"Invalid sync_status: {value}. "
                f"Must be one of: {', '.join(EXECUTOR_STATUSES)}"
            )
        return value

    def __repr__(self):
        return (
            f"<IntegrationConnection(id={self.id}, user_id={self.user_id}, "
            f"provider='{self.provider_id}', status='{self.status}')>"
        )
