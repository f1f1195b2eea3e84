"""Integrations API endpoints"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from ..auth.dependencies import get_current_user_id
from ..config import get_settings
from ..database import get_db
from .clients import ProviderClientRegistry, get_client_registry
from .errors import AuthorizationError, NotFoundError, ValidationError
from .executor import SyncExecutor
from .health import StatusAggregator
from .providers import ProviderCategory, ProviderRegistry, SyncOperation, get_provider_registry
from .schemas import (
    ConnectionCreate,
    ConnectionDetailResponse,
    ConnectionHealthResponse,
    ConnectionListResponse,
    ConnectionResponse,
    ConnectionTestItem,
    ConnectionTestResponse,
    ConnectionTestSummaryResponse,
    ConnectionUpdate,
    OrphanListResponse,
    OrphanResponse,
    ProviderResponse,
    PurgeOrphansRequest,
    PurgeOrphansResponse,
    SyncLogEntryResponse,
    SyncLogListResponse,
    SyncRequest,
)
from .store import ConnectionStore
from .sync_log import SyncLog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


def get_connection_store(
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> ConnectionStore:
    return ConnectionStore(db, registry=registry)


def get_sync_executor(
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    client_registry: ProviderClientRegistry = Depends(get_client_registry),
) -> SyncExecutor:
    return SyncExecutor(db, registry=registry, client_registry=client_registry)


@contextmanager
def _owned(connection_id: UUID) -> Iterator[None]:
    """Report another user's connection as absent rather than forbidden."""
    try:
        yield
    except AuthorizationError:
        raise NotFoundError(f"Integration {connection_id} not found")


def _to_response(store: ConnectionStore, connection) -> ConnectionResponse:
    return ConnectionResponse.from_connection(
        connection, store.registry.get_provider_by_id(connection.provider_id)
    )


# ============================================================================
# Provider catalog
# ============================================================================

@router.get("/providers", response_model=list[ProviderResponse])
def list_providers(
    category: Optional[str] = Query(None, description="Filter by provider category"),
    operation: Optional[str] = Query(None, description="Filter by supported operation"),
    registry: ProviderRegistry = Depends(get_provider_registry),
    user_id: UUID = Depends(get_current_user_id),
):
    """List the provider catalog, optionally filtered."""
    try:
        providers = (
            registry.get_providers_by_category(category) if category
            else registry.list_all_providers()
        )
        if operation:
            wanted = SyncOperation(operation)
            providers = [p for p in providers if p.supports(wanted)]
    except ValueError:
        raise ValidationError(
            "Invalid filter",
            details={
                "categories": [c.value for c in ProviderCategory],
                "operations": [o.value for o in SyncOperation],
            },
        )
    return [ProviderResponse.from_provider(p) for p in providers]


# ============================================================================
# Connection CRUD
# ============================================================================

@router.post("/test", response_model=ConnectionTestSummaryResponse)
def test_all_integrations(
    executor: SyncExecutor = Depends(get_sync_executor),
    user_id: UUID = Depends(get_current_user_id),
):
    """Test every connection the caller owns."""
    results = executor.test_all_connections(user_id)
    items = [
        ConnectionTestItem(
            connection_id=connection.id,
            provider_id=connection.provider_id,
            **ConnectionTestResponse.model_validate(result).model_dump(),
        )
        for connection, result in results
    ]
    succeeded = sum(1 for item in items if item.success)
    return ConnectionTestSummaryResponse(
        tested=len(items),
        succeeded=succeeded,
        failed=len(items) - succeeded,
        results=items,
    )


@router.post("", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
def create_integration(
    body: ConnectionCreate,
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    Register a connection to a provider.

    Raises:
        400: Unknown provider or invalid credentials
        409: Active connection already exists for a single-connection provider
    """
    connection = store.create_connection(
        user_id=user_id,
        provider_id=body.provider_id,
        credentials=body.credentials,
        sync_direction=body.sync_direction.value,
        sync_frequency=body.sync_frequency.value,
        settings=body.settings,
    )
    return _to_response(store, connection)


@router.get("", response_model=ConnectionListResponse)
def list_integrations(
    category: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    provider: Optional[str] = Query(None),
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """List the caller's connections, newest first."""
    connections = store.list_connections(
        user_id,
        category=category,
        status=status_filter,
        provider_id=provider,
    )
    items = [_to_response(store, c) for c in connections]
    return ConnectionListResponse(items=items, total=len(items))


@router.get("/{connection_id}", response_model=ConnectionDetailResponse)
def get_integration(
    connection_id: UUID,
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """Connection with its health and most recent sync log entries."""
    with _owned(connection_id):
        connection = store.get_connection(connection_id, user_id)
        health = StatusAggregator(store.db, store=store).get_connection_health(connection_id, user_id)

    recent = SyncLog(store.db).get_recent_entries(
        connection.id, limit=get_settings().SYNC_RECENT_LOG_LIMIT
    )
    return ConnectionDetailResponse(
        connection=_to_response(store, connection),
        health=ConnectionHealthResponse.model_validate(health),
        recent_logs=[SyncLogEntryResponse.model_validate(e) for e in recent],
    )


@router.patch("/{connection_id}", response_model=ConnectionResponse)
def update_integration(
    connection_id: UUID,
    body: ConnectionUpdate,
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    Update credentials, settings, direction, frequency or the enabled flag.

    Raises:
        400: Patch touches status, timestamps or other immutable fields
    """
    with _owned(connection_id):
        connection = store.update_connection(connection_id, user_id, body.to_patch())
    return _to_response(store, connection)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_integration(
    connection_id: UUID,
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """Delete a connection, its sync log and its synced records."""
    with _owned(connection_id):
        store.delete_connection(connection_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Sync
# ============================================================================

@router.post("/{connection_id}/sync", response_model=SyncLogEntryResponse)
def trigger_sync(
    connection_id: UUID,
    body: Optional[SyncRequest] = Body(None),
    executor: SyncExecutor = Depends(get_sync_executor),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    Run a sync attempt now and return its log entry.

    Raises:
        400: Connection disabled or operation unsupported
        409: A sync is already in progress
    """
    operations = body.operations if body else None
    with _owned(connection_id):
        entry = executor.run(connection_id, user_id, operations=operations)
    return SyncLogEntryResponse.model_validate(entry)


@router.get("/{connection_id}/sync", response_model=SyncLogListResponse)
def list_sync_logs(
    connection_id: UUID,
    limit: int = Query(10, ge=1, le=100),
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """Most recent sync log entries, newest first."""
    with _owned(connection_id):
        connection = store.get_connection(connection_id, user_id)
    entries = SyncLog(store.db).get_recent_entries(connection.id, limit=limit)
    return SyncLogListResponse(items=[SyncLogEntryResponse.model_validate(e) for e in entries])


@router.get("/{connection_id}/health", response_model=ConnectionHealthResponse)
def get_integration_health(
    connection_id: UUID,
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    with _owned(connection_id):
        health = StatusAggregator(store.db, store=store).get_connection_health(connection_id, user_id)
    return ConnectionHealthResponse.model_validate(health)


@router.post("/{connection_id}/test", response_model=ConnectionTestResponse)
def test_integration(
    connection_id: UUID,
    executor: SyncExecutor = Depends(get_sync_executor),
    user_id: UUID = Depends(get_current_user_id),
):
    """Test the provider with the stored credentials."""
    with _owned(connection_id):
        result = executor.test_connection(connection_id, user_id)
    return ConnectionTestResponse.model_validate(result)


# ============================================================================
# Orphaned records
# ============================================================================

@router.get("/{connection_id}/orphans", response_model=OrphanListResponse)
def list_orphans(
    connection_id: UUID,
    operation: Optional[str] = Query(None),
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """Local records the provider no longer returns."""
    with _owned(connection_id):
        records = store.list_orphans(connection_id, user_id, operation=operation)
    return OrphanListResponse(items=[OrphanResponse.model_validate(r) for r in records])


@router.post("/{connection_id}/orphans/purge", response_model=PurgeOrphansResponse)
def purge_orphans(
    connection_id: UUID,
    body: PurgeOrphansRequest,
    store: ConnectionStore = Depends(get_connection_store),
    user_id: UUID = Depends(get_current_user_id),
):
    """Delete the listed orphans. Keys that are no longer orphaned are skipped."""
    with _owned(connection_id):
        deleted = store.purge_orphans(
            connection_id, user_id, body.external_keys, operation=body.operation
        )
    return PurgeOrphansResponse(deleted=deleted)
