"""Pydantic schemas for the integrations API"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..models import IntegrationConnection, SyncDirection, SyncFrequency
from .providers import Provider


class ConnectionCreate(BaseModel):
    """Schema for registering a connection.

    Accepts both snake_case and the web client's camelCase keys.
    """
    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("provider_id", "providerId"),
    )
    credentials: Dict[str, Any] = Field(default_factory=dict)
    sync_direction: SyncDirection = Field(
        SyncDirection.BIDIRECTIONAL,
        validation_alias=AliasChoices("sync_direction", "syncDirection", "direction"),
    )
    sync_frequency: SyncFrequency = Field(
        SyncFrequency.HOURLY,
        validation_alias=AliasChoices("sync_frequency", "syncFrequency", "frequency"),
    )
    settings: Dict[str, Any] = Field(default_factory=dict)


class ConnectionUpdate(BaseModel):
    """Schema for PATCH /integrations/{id}.

    Unknown keys are kept so the store can reject them by name.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    credentials: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    sync_direction: Optional[SyncDirection] = Field(
        None,
        validation_alias=AliasChoices("sync_direction", "syncDirection", "direction"),
    )
    sync_frequency: Optional[SyncFrequency] = Field(
        None,
        validation_alias=AliasChoices("sync_frequency", "syncFrequency", "frequency"),
    )
    enabled: Optional[bool] = None

    def to_patch(self) -> Dict[str, Any]:
        patch = self.model_dump(exclude_unset=True)
        for key in ("sync_direction", "sync_frequency"):
            if patch.get(key) is not None:
                patch[key] = patch[key].value
        return patch


class ProviderResponse(BaseModel):
    id: str
    name: str
    category: str
    supported_operations: List[str]
    required_credentials: List[str]
    allows_multiple: bool
    description: str
    website: str

    @classmethod
    def from_provider(cls, provider: Provider) -> "ProviderResponse":
        return cls(
            id=provider.id,
            name=provider.name,
            category=provider.category.value,
            supported_operations=sorted(op.value for op in provider.supported_operations),
            required_credentials=list(provider.required_credentials),
            allows_multiple=provider.allows_multiple,
            description=provider.description,
            website=provider.website,
        )


class ConnectionResponse(BaseModel):
    """A connection as returned to its owner. Credential values are never included."""
    id: UUID
    provider_id: str
    provider_name: Optional[str] = None
    category: str
    status: str
    enabled: bool
    sync_direction: str
    sync_frequency: str
    settings: Dict[str, Any]
    credential_fields: List[str]
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    last_health_check_at: Optional[datetime] = None
    stats: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_connection(
        cls,
        connection: IntegrationConnection,
        provider: Optional[Provider],
    ) -> "ConnectionResponse":
        return cls(
            id=connection.id,
            provider_id=connection.provider_id,
            provider_name=provider.name if provider else None,
            category=connection.category,
            status=connection.status,
            enabled=connection.enabled,
            sync_direction=connection.sync_direction,
            sync_frequency=connection.sync_frequency,
            settings=connection.settings or {},
            credential_fields=provider.credential_model.field_names() if provider else [],
            last_sync_at=connection.last_sync_at,
            last_error=connection.last_error,
            last_error_code=connection.last_error_code,
            last_health_check_at=connection.last_health_check_at,
            stats=connection.stats or {},
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )


class ConnectionListResponse(BaseModel):
    items: List[ConnectionResponse]
    total: int


class SyncLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    connection_id: UUID
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: Optional[str] = None
    direction: str
    operations: List[str]
    items_processed: int
    items_failed: int
    items_orphaned: int
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    details: List[Dict[str, Any]]
    duration_ms: Optional[int] = None


class SyncLogListResponse(BaseModel):
    items: List[SyncLogEntryResponse]


class ConnectionHealthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    connection_id: UUID
    status: str
    last_success_at: Optional[datetime] = None
    consecutive_failures: int
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_health_check_at: Optional[datetime] = None


class ConnectionDetailResponse(BaseModel):
    connection: ConnectionResponse
    health: ConnectionHealthResponse
    recent_logs: List[SyncLogEntryResponse]


class SyncRequest(BaseModel):
    """Body of POST /integrations/{id}/sync. Empty means every supported operation."""
    operations: List[str] = Field(default_factory=list)


class ConnectionTestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    latency_ms: int
    tested_at: datetime


class ConnectionTestItem(ConnectionTestResponse):
    connection_id: UUID
    provider_id: str


class ConnectionTestSummaryResponse(BaseModel):
    """Body of POST /integrations/test"""
    tested: int
    succeeded: int
    failed: int
    results: List[ConnectionTestItem]


class OrphanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    operation: str
    external_key: str
    payload: Dict[str, Any]
    orphaned_at: datetime


class OrphanListResponse(BaseModel):
    items: List[OrphanResponse]


class PurgeOrphansRequest(BaseModel):
    external_keys: List[str] = Field(..., min_length=1, max_length=1000)
    operation: Optional[str] = None


class PurgeOrphansResponse(BaseModel):
    deleted: int
