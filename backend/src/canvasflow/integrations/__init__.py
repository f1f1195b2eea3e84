"""Integration registry and sync workflow.

Provider catalog, connection store, sync executor, sync log and status
aggregation for a user's external systems.
"""

from .errors import (
    IntegrationError,
    ValidationError,
    DuplicateConnectionError,
    AuthorizationError,
    NotFoundError,
    AlreadyInProgressError,
    ProviderError,
    AuthExpiredError,
    TransientProviderError,
    ProviderTimeoutError,
    FatalProviderError,
)
from .providers import (
    Provider,
    ProviderCategory,
    ProviderRegistry,
    SyncOperation,
    DEFAULT_PROVIDERS,
    get_provider_registry,
)
from .store import ConnectionStore
from .sync_log import SyncLog
from .executor import SyncExecutor, SyncState, RecordWriter
from .health import StatusAggregator, ConnectionHealth
from .reconcile import reconcile, ReconcileDiff, RemoteRecord, LocalRecord

__all__ = [
    # Errors
    "IntegrationError",
    "ValidationError",
    "DuplicateConnectionError",
    "AuthorizationError",
    "NotFoundError",
    "AlreadyInProgressError",
    "ProviderError",
    "AuthExpiredError",
    "TransientProviderError",
    "ProviderTimeoutError",
    "FatalProviderError",
    # Catalog
    "Provider",
    "ProviderCategory",
    "ProviderRegistry",
    "SyncOperation",
    "DEFAULT_PROVIDERS",
    "get_provider_registry",
    # Workflow
    "ConnectionStore",
    "SyncLog",
    "SyncExecutor",
    "SyncState",
    "RecordWriter",
    "StatusAggregator",
    "ConnectionHealth",
    "reconcile",
    "ReconcileDiff",
    "RemoteRecord",
    "LocalRecord",
]
