"""SyncedRecord model - local copy of records exchanged with a provider."""

import hashlib
import json
import uuid

from sqlalchemy import Column, String, Boolean, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship, validates

from .base import Base, PortableJSONB, UTCDateTime, utcnow


MAX_EXTERNAL_KEY_LENGTH = 255


def content_hash(payload: dict) -> str:
    """Stable sha256 over canonical JSON (sorted keys, no whitespace)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SyncedRecord(Base):
    """
    A product, order, stock level or price held locally for one connection.

    Keyed by (connection_id, operation, external_key); the external key is
    the provider's stable identifier (SKU, order number).

    Attributes:
        payload: Last known record body
        content_hash: sha256 of the canonical payload, used by reconciliation
        remote_confirmed: Record has been seen on, or pushed to, the remote
        orphaned_at: Set when a pull no longer returns the record; cleared if it returns
    """

    __tablename__ = "synced_record"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        Uuid,
        ForeignKey("integration_connection.id", ondelete="CASCADE"),
        nullable=False,
    )
    operation = Column(String(32), nullable=False)
    external_key = Column(String(MAX_EXTERNAL_KEY_LENGTH), nullable=False)
    payload = Column(PortableJSONB, nullable=False)
    content_hash = Column(String(64), nullable=False)
    remote_confirmed = Column(Boolean, nullable=False, default=False)
    orphaned_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    connection = relationship("IntegrationConnection", back_populates="synced_records")

    __table_args__ = (
        Index(
            "uq_synced_record_connection_key",
            connection_id,
            operation,
            external_key,
            unique=True,
        ),
        Index("idx_synced_record_orphaned", connection_id, orphaned_at),
    )

    @validates('external_key')
    def validate_external_key(self, key, value):
        """Reject empty or oversized external keys."""
        if value is None or not str(value).strip():
            raise ValueError("external_key must not be empty")
        if len(value) > MAX_EXTERNAL_KEY_LENGTH:
            raise ValueError(
                f"external_key exceeds {MAX_EXTERNAL_KEY_LENGTH} characters"
            )
        return value

    def set_payload(self, payload: dict) -> None:
        self.payload = payload
        self.content_hash = content_hash(payload)

    def __repr__(self):
        return (
            f"<SyncedRecord(connection_id={self.connection_id}, "
            f"operation='{self.operation}', key='{self.external_key}')>"
        )
