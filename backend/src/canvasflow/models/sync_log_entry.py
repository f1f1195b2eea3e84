"""SyncLogEntry model - one row per sync attempt.

An entry is inserted open (finished_at IS NULL) when a sync run is admitted
and closed exactly once when the run reaches a terminal state. The partial
unique index on connection_id makes the open insert the admission check.
"""

import uuid
from enum import Enum

from sqlalchemy import (
    Column,
    Text,
    String,
    Integer,
    ForeignKey,
    Index,
    CheckConstraint,
    Uuid,
    event,
    inspect,
    select,
    text,
)
from sqlalchemy.orm import relationship, validates, Session

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class SyncOutcome(str, Enum):
    """Terminal classification of a sync attempt."""
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncLogImmutableError(RuntimeError):
    """Raised when a finished sync log entry is modified."""
    pass


class SyncLogEntry(Base):
    """
    Sync Log Entry - append-only history of sync attempts.

    Used for status reporting (health, consecutive failures) and for
    admission control: at most one open entry exists per connection.
    """
    __tablename__ = "sync_log_entry"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        Uuid,
        ForeignKey("integration_connection.id", ondelete="CASCADE"),
        nullable=False,
    )
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    finished_at = Column(
        UTCDateTime,
        nullable=True,
        comment="NULL while the attempt is in progress",
    )
    outcome = Column(
        String(16),
        nullable=True,
        comment="succeeded | partial | failed (NULL while open)",
    )
    direction = Column(String(16), nullable=False)
    operations = Column(PortableJSONB, nullable=False, default=list)
    items_processed = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    items_orphaned = Column(Integer, nullable=False, default=0)
    error_code = Column(String(64), nullable=True)
    error_detail = Column(Text, nullable=True)
    details = Column(
        PortableJSONB,
        nullable=False,
        default=list,
        comment="Per-operation summaries and failed item keys",
    )
    duration_ms = Column(Integer, nullable=True)

    connection = relationship("IntegrationConnection", back_populates="sync_logs")

    __table_args__ = (
        CheckConstraint(
            "outcome IS NULL OR outcome IN ('succeeded', 'partial', 'failed')",
            name="ck_sync_log_entry_outcome",
        ),
        CheckConstraint(
            "items_processed >= 0 AND items_failed >= 0 AND items_orphaned >= 0",
            name="ck_sync_log_entry_counts",
        ),
        Index("idx_sync_log_entry_connection", "connection_id", text("started_at DESC")),
        Index(
            "uq_sync_log_entry_open",
            "connection_id",
            unique=True,
            postgresql_where=text("finished_at IS NULL"),
            sqlite_where=text("finished_at IS NULL"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.finished_at is None

    @validates('outcome')
    def validate_outcome(self, key, value):
        """Ensure outcome is valid."""
        if value is None:
            return value
        return SyncOutcome(value).value

    def __repr__(self):
        return (
            f"<SyncLogEntry(id={self.id}, connection_id={self.connection_id}, "
            f"outcome='{self.outcome}', processed={self.items_processed})>"
        )


def _persisted_finished_at(session, instance):
    """finished_at as stored, even when the instance was expired by a rollback."""
    history = inspect(instance).attrs.finished_at.history
    if history.unchanged or history.deleted:
        return (history.unchanged or history.deleted)[0]

    with session.no_autoflush:
        return session.execute(
            select(SyncLogEntry.finished_at).where(SyncLogEntry.id == instance.id)
        ).scalar_one_or_none()


@event.listens_for(Session, "before_flush")
def reject_finished_entry_updates(session, flush_context, instances):
    """Refuse to flush changes to an entry that was already finished.

    Closing an open entry is the only permitted update. Deletion (pruning,
    connection cascade) is not an update and stays allowed.
    """
    for instance in session.dirty:
        if not isinstance(instance, SyncLogEntry):
            continue
        if not session.is_modified(instance):
            continue

        if _persisted_finished_at(session, instance) is not None:
            raise SyncLogImmutableError(
                f"Sync log entry {instance.id} is finished and cannot be modified"
            )
