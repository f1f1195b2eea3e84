"""
Connection Store - persistence of integration connections.

Every call is scoped to the requesting user and fails closed: a connection
that exists but belongs to someone else raises AuthorizationError, never
returns data. Credentials are validated against the provider's variant and
stored encrypted.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
    ConnectionStatus,
    IntegrationConnection,
    SyncDirection,
    SyncedRecord,
    SyncFrequency,
)
from .credentials import ProviderCredentials, validate_credentials
from .encryption import CredentialCipher, EncryptionError, get_credential_cipher
from .errors import (
    AuthorizationError,
    DuplicateConnectionError,
    NotFoundError,
    ValidationError,
)
from .providers import Provider, ProviderCategory, ProviderRegistry, get_provider_registry


logger = logging.getLogger(__name__)

# Fields a user may change after creation. Everything else is either fixed at
# creation (provider, owner) or written by the sync executor.
MUTABLE_FIELDS = frozenset({
    "credentials",
    "settings",
    "sync_direction",
    "sync_frequency",
    "enabled",
})


def _coerce_enum(enum_cls, value, field_name: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name}: '{value}'. Must be one of: {allowed}",
            details={"field": field_name},
        )


def _check_settings(settings: Any) -> Dict[str, Any]:
    if settings is None:
        return {}
    if not isinstance(settings, dict):
        raise ValidationError("settings must be an object", details={"field": "settings"})
    return settings


class ConnectionStore:
    """CRUD over IntegrationConnection for a single database session."""

    def __init__(
        self,
        db: Session,
        registry: Optional[ProviderRegistry] = None,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.db = db
        self.registry = registry or get_provider_registry()
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_credential_cipher()
        return self._cipher

    def _require_provider(self, provider_id: str) -> Provider:
        provider = self.registry.get_provider_by_id(provider_id)
        if provider is None:
            raise ValidationError(
                f"Unknown provider: '{provider_id}'",
                details={"provider_id": provider_id},
            )
        return provider

    def _check_duplicate(
        self,
        user_id: UUID,
        provider: Provider,
        exclude_id: Optional[UUID] = None,
    ) -> None:
        if provider.allows_multiple:
            return

        stmt = select(IntegrationConnection.id).where(
            IntegrationConnection.user_id == user_id,
            IntegrationConnection.provider_id == provider.id,
            IntegrationConnection.enabled.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(IntegrationConnection.id != exclude_id)

        if self.db.execute(stmt.limit(1)).first() is not None:
            raise self._duplicate(provider)

    def _duplicate(self, provider: Provider) -> DuplicateConnectionError:
        return DuplicateConnectionError(
            f"An active {provider.name} connection already exists",
            details={"provider_id": provider.id},
        )

    def _commit(self, provider: Provider) -> None:
        """Commit; a concurrent write that won the single-connection index is a duplicate."""
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise self._duplicate(provider)

    def create_connection(
        self,
        user_id: UUID,
        provider_id: str,
        credentials: Optional[Dict[str, Any]],
        sync_direction: str = SyncDirection.BIDIRECTIONAL.value,
        sync_frequency: str = SyncFrequency.HOURLY.value,
        settings: Optional[Dict[str, Any]] = None,
    ) -> IntegrationConnection:
        """
        Register a new connection for user_id.

        Raises:
            ValidationError: Unknown provider, invalid credentials, bad enum values
            DuplicateConnectionError: Provider allows one active connection and one exists
        """
        provider = self._require_provider(provider_id)
        validated = validate_credentials(provider.id, provider.credential_model, credentials)
        direction = _coerce_enum(SyncDirection, sync_direction, "sync_direction")
        frequency = _coerce_enum(SyncFrequency, sync_frequency, "sync_frequency")
        settings = _check_settings(settings)

        self._check_duplicate(user_id, provider)

        connection = IntegrationConnection(
            user_id=user_id,
            provider_id=provider.id,
            category=provider.category.value,
            credentials_encrypted=self.cipher.encrypt(provider.id, validated.model_dump()),
            settings=settings,
            sync_direction=direction,
            sync_frequency=frequency,
            enabled=True,
            single_connection=not provider.allows_multiple,
            sync_status=ConnectionStatus.PENDING.value,
        )
        self.db.add(connection)
        self._commit(provider)
        self.db.refresh(connection)

        logger.info(
            "Integration connection created",
            extra={
                "connection_id": str(connection.id),
                "provider_id": provider.id,
                "user_id": str(user_id),
            },
        )
        return connection

    def get_connection(self, connection_id: UUID, requesting_user_id: UUID) -> IntegrationConnection:
        """
        Load a connection owned by requesting_user_id.

        Raises:
            NotFoundError: No connection with this id
            AuthorizationError: Connection belongs to another user
        """
        connection = self.db.get(IntegrationConnection, connection_id)
        if connection is None:
            raise NotFoundError(f"Integration {connection_id} not found")

        if connection.user_id != requesting_user_id:
            logger.warning(
                "Cross-user connection access denied",
                extra={
                    "connection_id": str(connection_id),
                    "user_id": str(requesting_user_id),
                },
            )
            raise AuthorizationError(f"Integration {connection_id} is not accessible")

        return connection

    def list_connections(
        self,
        user_id: UUID,
        category: Optional[str] = None,
        status: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> List[IntegrationConnection]:
        """List user_id's connections, newest first, with optional filters."""
        stmt = select(IntegrationConnection).where(IntegrationConnection.user_id == user_id)

        if category is not None:
            category = _coerce_enum(ProviderCategory, category, "category")
            stmt = stmt.where(IntegrationConnection.category == category)
        if status is not None:
            status = _coerce_enum(ConnectionStatus, status, "status")
            stmt = stmt.where(IntegrationConnection.status == status)
        if provider_id is not None:
            stmt = stmt.where(IntegrationConnection.provider_id == provider_id)

        stmt = stmt.order_by(IntegrationConnection.created_at.desc())
        return list(self.db.execute(stmt).scalars().all())

    def update_connection(
        self,
        connection_id: UUID,
        requesting_user_id: UUID,
        patch: Dict[str, Any],
    ) -> IntegrationConnection:
        """
        Apply a user patch to the mutable fields of a connection.

        Credentials are merged over the stored ones and re-validated. Settings
        are merged shallowly. Re-enabling a connection re-checks the
        one-active-connection rule.

        Raises:
            ValidationError: Patch touches an immutable or executor-owned field
        """
        immutable = sorted(set(patch) - MUTABLE_FIELDS)
        if immutable:
            raise ValidationError(
                f"Cannot update field(s): {', '.join(immutable)}",
                details={"immutable_fields": immutable},
            )

        connection = self.get_connection(connection_id, requesting_user_id)
        provider = self._require_provider(connection.provider_id)

        if patch.get("credentials") is not None:
            updates = patch["credentials"]
            if not isinstance(updates, dict):
                raise ValidationError("Credentials must be an object")
            merged = {**self.decrypt_credentials(connection).model_dump(), **updates}
            validated = validate_credentials(provider.id, provider.credential_model, merged)
            connection.credentials_encrypted = self.cipher.encrypt(
                provider.id, validated.model_dump()
            )

        if patch.get("settings") is not None:
            connection.settings = {**(connection.settings or {}), **_check_settings(patch["settings"])}

        if patch.get("sync_direction") is not None:
            connection.sync_direction = _coerce_enum(
                SyncDirection, patch["sync_direction"], "sync_direction"
            )

        if patch.get("sync_frequency") is not None:
            connection.sync_frequency = _coerce_enum(
                SyncFrequency, patch["sync_frequency"], "sync_frequency"
            )

        if patch.get("enabled") is not None:
            enabled = bool(patch["enabled"])
            if enabled and not connection.enabled:
                self._check_duplicate(connection.user_id, provider, exclude_id=connection.id)
            connection.enabled = enabled

        self._commit(provider)
        self.db.refresh(connection)

        logger.info(
            "Integration connection updated",
            extra={
                "connection_id": str(connection.id),
                "provider_id": connection.provider_id,
                "fields": sorted(patch),
            },
        )
        return connection

    def delete_connection(self, connection_id: UUID, requesting_user_id: UUID) -> None:
        """Delete a connection together with its sync log and synced records."""
        connection = self.get_connection(connection_id, requesting_user_id)
        self.db.delete(connection)
        self.db.commit()

        logger.info(
            "Integration connection deleted",
            extra={"connection_id": str(connection_id), "provider_id": connection.provider_id},
        )

    def decrypt_credentials(self, connection: IntegrationConnection) -> ProviderCredentials:
        """
        Decrypt and re-validate a connection's stored credentials.

        Raises:
            ValidationError: Provider unknown or stored payload no longer valid
            EncryptionError: Blob cannot be decrypted with the current key
        """
        provider = self._require_provider(connection.provider_id)
        try:
            payload = self.cipher.decrypt(provider.id, connection.credentials_encrypted)
        except EncryptionError:
            logger.error(
                "Stored credentials could not be decrypted",
                extra={"connection_id": str(connection.id), "provider_id": provider.id},
            )
            raise
        return validate_credentials(provider.id, provider.credential_model, payload)

    def list_orphans(
        self,
        connection_id: UUID,
        requesting_user_id: UUID,
        operation: Optional[str] = None,
    ) -> List[SyncedRecord]:
        """Records a pull no longer sees, oldest orphan first."""
        connection = self.get_connection(connection_id, requesting_user_id)

        stmt = select(SyncedRecord).where(
            SyncedRecord.connection_id == connection.id,
            SyncedRecord.orphaned_at.is_not(None),
        )
        if operation is not None:
            stmt = stmt.where(SyncedRecord.operation == operation)

        stmt = stmt.order_by(SyncedRecord.orphaned_at, SyncedRecord.external_key)
        return list(self.db.execute(stmt).scalars().all())

    def purge_orphans(
        self,
        connection_id: UUID,
        requesting_user_id: UUID,
        external_keys: Iterable[str],
        operation: Optional[str] = None,
    ) -> int:
        """
        Delete confirmed orphans by external key.

        Keys that are not currently orphaned are ignored, so a record that
        reappeared on the remote since it was listed survives the purge.

        Returns:
            Number of records deleted
        """
        connection = self.get_connection(connection_id, requesting_user_id)
        keys = list(dict.fromkeys(external_keys))
        if not keys:
            return 0

        stmt = delete(SyncedRecord).where(
            SyncedRecord.connection_id == connection.id,
            SyncedRecord.orphaned_at.is_not(None),
            SyncedRecord.external_key.in_(keys),
        )
        if operation is not None:
            stmt = stmt.where(SyncedRecord.operation == operation)

        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        self.db.commit()

        logger.info(
            "Orphaned records purged",
            extra={
                "connection_id": str(connection.id),
                "requested": len(keys),
                "deleted": result.rowcount,
            },
        )
        return result.rowcount
