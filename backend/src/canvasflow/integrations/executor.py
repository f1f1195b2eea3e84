"""
Sync Executor - drives one sync attempt for one connection.

State machine:

    PENDING -> FETCHING -> RECONCILING -> WRITING -> SUCCEEDED | PARTIAL | FAILED

Pre-admission checks (ownership, enabled, provider, operations) raise and
leave no trace. Once the open SyncLogEntry is committed the attempt is
admitted: from then on every error is captured into that entry, the entry is
closed exactly once, and run() returns it.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..models import (
    ConnectionStatus,
    IntegrationConnection,
    SyncDirection,
    SyncedRecord,
    SyncLogEntry,
    SyncOutcome,
)
from ..models.base import utcnow
from ..observability.metrics import (
    provider_fetch_retries_total,
    sync_admission_rejected_total,
    sync_duration_seconds,
    sync_items_total,
    sync_runs_total,
)
from .clients import (
    ConnectionTestResult,
    ProviderClient,
    ProviderClientRegistry,
    get_client_registry,
)
from .encryption import EncryptionError
from .errors import (
    AlreadyInProgressError,
    AuthExpiredError,
    FatalProviderError,
    IntegrationError,
    ProviderError,
    ProviderTimeoutError,
    TransientProviderError,
    ValidationError,
)
from .providers import Provider, ProviderRegistry, SyncOperation, get_provider_registry
from .reconcile import LocalRecord, ReconcileDiff, RemoteRecord, reconcile, to_remote_records
from .store import ConnectionStore
from .sync_log import SyncLog


logger = logging.getLogger(__name__)

# Stable error codes stored on the log entry besides the ProviderError ones
CREDENTIALS_INVALID = "CREDENTIALS_INVALID"
ITEMS_FAILED = "ITEMS_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"

# Per-item exceptions that fail one item without aborting the batch
ITEM_ERRORS = (SQLAlchemyError, ValueError, ProviderError)


class SyncState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    WRITING = "writing"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


class FetchFailed(Exception):
    """Internal signal: the FETCHING phase ended the attempt."""

    def __init__(self, error_code: str, message: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass
class ItemFailure:
    operation: str
    key: str
    error: str


@dataclass
class OperationReport:
    """What happened to one operation during an attempt."""

    operation: SyncOperation
    fetched: int = 0
    diff: Optional[ReconcileDiff] = None
    written: int = 0
    orphaned: int = 0
    failures: List[ItemFailure] = field(default_factory=list)
    remote: List[RemoteRecord] = field(default_factory=list)
    local_rows: Dict[str, SyncedRecord] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "operation": self.operation.value,
            "fetched": self.fetched,
            "written": self.written,
            "orphaned": self.orphaned,
            "failed": [{"key": f.key, "error": f.error} for f in self.failures],
        }
        if self.diff is not None:
            data["diff"] = self.diff.summary()
            if self.diff.duplicate_keys:
                data["duplicate_keys"] = list(self.diff.duplicate_keys)
        return data


class RecordWriter:
    """
    Local side of the WRITING phase.

    Each method mutates exactly one SyncedRecord; the executor commits after
    every call so a failing item never takes its neighbours down with it.
    """

    def __init__(self, db: Session):
        self.db = db

    def upsert(
        self,
        connection: IntegrationConnection,
        operation: SyncOperation,
        remote: RemoteRecord,
        existing: Optional[SyncedRecord],
    ) -> SyncedRecord:
        record = existing
        if record is None:
            record = SyncedRecord(
                connection_id=connection.id,
                operation=operation.value,
                external_key=remote.key,
            )
            self.db.add(record)
        if record.content_hash != remote.content_hash:
            record.set_payload(remote.payload)
        record.remote_confirmed = True
        record.orphaned_at = None
        self.db.flush()
        return record

    def mark_orphaned(self, record: SyncedRecord, now: datetime) -> None:
        record.orphaned_at = now
        self.db.flush()

    def mark_pushed(self, record: SyncedRecord) -> None:
        record.remote_confirmed = True
        record.orphaned_at = None
        self.db.flush()


class SyncExecutor:
    """
    Runs sync attempts.

    Args:
        db: Session used for the whole attempt
        registry: Provider catalog
        client_registry: Resolves the ProviderClient for a provider
        writer: Local record writer (tests inject failing writers)
        settings: Retry and timeout knobs
        sleep: Backoff sleep, injectable for tests
        clock: Monotonic clock used for the fetch deadline
    """

    def __init__(
        self,
        db: Session,
        registry: Optional[ProviderRegistry] = None,
        client_registry: Optional[ProviderClientRegistry] = None,
        store: Optional[ConnectionStore] = None,
        writer: Optional[RecordWriter] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.registry = registry or get_provider_registry()
        self.client_registry = client_registry or get_client_registry()
        self.store = store or ConnectionStore(db, registry=self.registry)
        self.writer = writer or RecordWriter(db)
        self.settings = settings or get_settings()
        self.sync_log = SyncLog(db)
        self._sleep = sleep
        self._clock = clock
        self.state = SyncState.PENDING

    # ------------------------------------------------------------------
    # Pre-admission
    # ------------------------------------------------------------------

    def _prepare(
        self,
        connection_id: UUID,
        requesting_user_id: UUID,
        operations: Optional[Sequence[str]],
    ) -> Tuple[IntegrationConnection, Provider, List[SyncOperation]]:
        connection = self.store.get_connection(connection_id, requesting_user_id)

        if not connection.enabled:
            raise ValidationError(
                "Integration is disabled",
                details={"connection_id": str(connection.id)},
            )

        provider = self.registry.get_provider_by_id(connection.provider_id)
        if provider is None:
            raise ValidationError(
                f"Unknown provider: '{connection.provider_id}'",
                details={"provider_id": connection.provider_id},
            )

        if not operations:
            return connection, provider, [op for op in SyncOperation if provider.supports(op)]

        resolved: List[SyncOperation] = []
        for value in operations:
            try:
                operation = SyncOperation(value)
            except ValueError:
                raise ValidationError(
                    f"Unknown operation: '{value}'",
                    details={"operation": value},
                )
            if not provider.supports(operation):
                raise ValidationError(
                    f"{provider.name} does not support '{operation.value}'",
                    details={"provider_id": provider.id, "operation": operation.value},
                )
            if operation not in resolved:
                resolved.append(operation)

        return connection, provider, resolved

    def _admit(
        self,
        connection: IntegrationConnection,
        provider: Provider,
        operations: List[SyncOperation],
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            connection_id=connection.id,
            started_at=utcnow(),
            direction=connection.sync_direction,
            operations=[op.value for op in operations],
        )
        try:
            return self.sync_log.append_entry(entry)
        except AlreadyInProgressError:
            sync_admission_rejected_total.labels(provider=provider.id).inc()
            logger.info(
                "Sync rejected: already in progress",
                extra={"connection_id": str(connection.id), "provider_id": provider.id},
            )
            raise

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        connection_id: UUID,
        requesting_user_id: UUID,
        operations: Optional[Sequence[str]] = None,
    ) -> SyncLogEntry:
        """
        Execute one sync attempt.

        Args:
            connection_id: Connection to sync
            requesting_user_id: Caller; must own the connection
            operations: Operation names; empty or None means all supported

        Returns:
            The closed SyncLogEntry for this attempt

        Raises:
            NotFoundError / AuthorizationError: Connection absent or not owned
            ValidationError: Disabled connection, unknown provider, unsupported operation
            AlreadyInProgressError: Another attempt holds the open entry
        """
        self.state = SyncState.PENDING
        connection, provider, ops = self._prepare(connection_id, requesting_user_id, operations)
        self.recover_stale_entries(connection.id)
        entry = self._admit(connection, provider, ops)
        started = self._clock()

        log_extra = {
            "connection_id": str(connection.id),
            "provider_id": provider.id,
            "sync_log_id": str(entry.id),
        }
        logger.info("Sync started", extra={**log_extra, "operation": ",".join(o.value for o in ops)})

        reports: List[OperationReport] = [OperationReport(operation=op) for op in ops]
        error_code: Optional[str] = None
        error_detail: Optional[str] = None
        client: Optional[ProviderClient] = None

        try:
            client = self._build_client(connection, provider)
            self._fetch_all(client, provider, reports)
            self._reconcile_all(connection, reports)
            self._write_all(client, connection, reports, SyncDirection(entry.direction))
        except FetchFailed as e:
            error_code, error_detail = e.error_code, e.message
        except Exception as e:
            logger.exception("Sync aborted by unexpected error", extra=log_extra)
            self.db.rollback()
            error_code, error_detail = INTERNAL_ERROR, f"{type(e).__name__}: {e}"
        finally:
            if client is not None:
                client.close()

        outcome, error_code, error_detail = self._classify(reports, error_code, error_detail)
        entry = self._finalize(connection, provider, entry, outcome, reports, error_code, error_detail)

        elapsed = self._clock() - started
        sync_runs_total.labels(provider=provider.id, outcome=outcome.value).inc()
        sync_duration_seconds.labels(provider=provider.id).observe(max(elapsed, 0.0))

        log = logger.warning if outcome == SyncOutcome.FAILED else logger.info
        log(
            f"Sync finished: {outcome.value}",
            extra={
                **log_extra,
                "outcome": outcome.value,
                "error_code": error_code,
                "items_processed": entry.items_processed,
                "items_failed": entry.items_failed,
                "duration_ms": entry.duration_ms,
            },
        )
        return entry

    # ------------------------------------------------------------------
    # FETCHING
    # ------------------------------------------------------------------

    def _build_client(self, connection: IntegrationConnection, provider: Provider) -> ProviderClient:
        try:
            credentials = self.store.decrypt_credentials(connection)
        except (EncryptionError, ValidationError) as e:
            raise FetchFailed(CREDENTIALS_INVALID, f"Stored credentials are unusable: {e}")
        try:
            return self.client_registry.build(provider, credentials)
        except ProviderError as e:
            raise FetchFailed(e.error_code, str(e))

    def _fetch_all(
        self,
        client: ProviderClient,
        provider: Provider,
        reports: List[OperationReport],
    ) -> None:
        self.state = SyncState.FETCHING
        deadline = self._clock() + self.settings.SYNC_FETCH_TIMEOUT_SECONDS

        for report in reports:
            items = self._fetch_with_retry(client, provider, report.operation, deadline)
            report.remote = to_remote_records(items, report.operation.key_field)
            report.fetched = len(items)

    def _fetch_with_retry(
        self,
        client: ProviderClient,
        provider: Provider,
        operation: SyncOperation,
        deadline: float,
    ) -> List[Dict[str, Any]]:
        max_attempts = max(1, self.settings.SYNC_MAX_FETCH_ATTEMPTS)
        timeout_message = (
            f"Fetching {operation.value} exceeded "
            f"{self.settings.SYNC_FETCH_TIMEOUT_SECONDS:g}s"
        )

        for attempt in range(max_attempts):
            if self._clock() >= deadline:
                raise FetchFailed(ProviderTimeoutError.error_code, timeout_message)

            try:
                items = client.fetch_records(operation)
            except AuthExpiredError as e:
                raise FetchFailed(e.error_code, str(e) or "Provider rejected the credentials")
            except ProviderTimeoutError as e:
                raise FetchFailed(e.error_code, str(e) or timeout_message)
            except TransientProviderError as e:
                if attempt + 1 >= max_attempts:
                    raise FetchFailed(
                        e.error_code,
                        f"{operation.value}: gave up after {max_attempts} attempts: {e}",
                    )
                delay = self.settings.SYNC_RETRY_DELAY_BASE * (2 ** attempt)
                if self._clock() + delay >= deadline:
                    raise FetchFailed(ProviderTimeoutError.error_code, timeout_message)

                provider_fetch_retries_total.labels(provider=provider.id).inc()
                logger.info(
                    f"Transient fetch failure, retrying in {delay:g}s",
                    extra={"provider_id": provider.id, "operation": operation.value, "attempt": attempt + 1},
                )
                self._sleep(delay)
                continue
            except ProviderError as e:
                raise FetchFailed(FatalProviderError.error_code, str(e) or type(e).__name__)

            if self._clock() > deadline:
                raise FetchFailed(ProviderTimeoutError.error_code, timeout_message)
            if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
                raise FetchFailed(
                    FatalProviderError.error_code,
                    f"{operation.value}: provider returned malformed records",
                )
            return items

        # unreachable: the loop either returns or raises
        raise FetchFailed(TransientProviderError.error_code, f"{operation.value}: no attempts made")

    # ------------------------------------------------------------------
    # RECONCILING
    # ------------------------------------------------------------------

    def _load_local(
        self,
        connection: IntegrationConnection,
        operation: SyncOperation,
    ) -> Dict[str, SyncedRecord]:
        stmt = (
            select(SyncedRecord)
            .where(
                SyncedRecord.connection_id == connection.id,
                SyncedRecord.operation == operation.value,
            )
            .order_by(SyncedRecord.external_key)
        )
        return {record.external_key: record for record in self.db.execute(stmt).scalars()}

    def _reconcile_all(self, connection: IntegrationConnection, reports: List[OperationReport]) -> None:
        self.state = SyncState.RECONCILING

        for report in reports:
            local_rows = self._load_local(connection, report.operation)
            local = [
                LocalRecord(
                    key=row.external_key,
                    content_hash=row.content_hash,
                    remote_confirmed=row.remote_confirmed,
                    orphaned=row.orphaned_at is not None,
                )
                for row in local_rows.values()
            ]
            report.diff = reconcile(report.remote, local)
            report.local_rows = local_rows
            for record in report.diff.keyless:
                report.failures.append(ItemFailure(
                    operation=report.operation.value,
                    key="",
                    error=f"Record has no '{report.operation.key_field}' value",
                ))

            if report.diff.duplicate_keys:
                logger.warning(
                    "Remote returned duplicate keys; last occurrence kept",
                    extra={
                        "connection_id": str(connection.id),
                        "operation": report.operation.value,
                        "count": len(report.diff.duplicate_keys),
                    },
                )

    # ------------------------------------------------------------------
    # WRITING
    # ------------------------------------------------------------------

    def _apply(self, report: OperationReport, key: str, action: Callable[[], None]) -> bool:
        """Run and commit one item write. Failures are recorded, not raised."""
        try:
            action()
            self.db.commit()
        except ITEM_ERRORS as e:
            self.db.rollback()
            report.failures.append(
                ItemFailure(operation=report.operation.value, key=key, error=str(e) or type(e).__name__)
            )
            logger.warning(
                f"Sync item failed: {key}",
                extra={"operation": report.operation.value, "error_code": type(e).__name__},
            )
            return False
        return True

    def _write_all(
        self,
        client: ProviderClient,
        connection: IntegrationConnection,
        reports: List[OperationReport],
        direction: SyncDirection,
    ) -> None:
        self.state = SyncState.WRITING

        for report in reports:
            if direction in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL):
                self._pull(connection, report)
            if direction in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL):
                self._push(client, report, push_changed=direction == SyncDirection.PUSH)
            if direction == SyncDirection.PUSH:
                for remote in report.diff.relinked:
                    existing = report.local_rows[remote.key]
                    if self._apply(report, remote.key, lambda r=existing: self.writer.mark_pushed(r)):
                        report.written += 1
            self._orphan(report, direction)

    def _pull(self, connection: IntegrationConnection, report: OperationReport) -> None:
        diff = report.diff
        remotes = list(diff.new) + [c.remote for c in diff.changed] + list(diff.relinked)

        for remote in remotes:
            existing = report.local_rows.get(remote.key)

            def action(remote=remote, existing=existing):
                self.writer.upsert(connection, report.operation, remote, existing)

            if self._apply(report, remote.key, action):
                report.written += 1

    def _push(self, client: ProviderClient, report: OperationReport, push_changed: bool) -> None:
        diff = report.diff
        candidates = [
            report.local_rows[local.key]
            for local in diff.orphaned
            if not local.orphaned and (push_changed or not local.remote_confirmed)
        ]
        if push_changed:
            candidates += [report.local_rows[c.local.key] for c in diff.changed]

        for row in candidates:
            def action(row=row):
                client.push_record(report.operation, dict(row.payload))
                self.writer.mark_pushed(row)

            if self._apply(report, row.external_key, action):
                report.written += 1

    def _orphan(self, report: OperationReport, direction: SyncDirection) -> None:
        if direction == SyncDirection.PUSH:
            return

        now = utcnow()
        for local in report.diff.orphaned:
            if local.orphaned:
                continue
            if direction == SyncDirection.BIDIRECTIONAL and not local.remote_confirmed:
                # pushed above, or recorded as a failed push
                continue
            row = report.local_rows[local.key]
            if self._apply(report, local.key, lambda row=row: self.writer.mark_orphaned(row, now)):
                report.orphaned += 1

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def _classify(
        self,
        reports: List[OperationReport],
        error_code: Optional[str],
        error_detail: Optional[str],
    ) -> Tuple[SyncOutcome, Optional[str], Optional[str]]:
        if error_code is not None:
            self.state = SyncState.FAILED
            return SyncOutcome.FAILED, error_code, error_detail

        failures = [f for r in reports for f in r.failures]
        written = sum(r.written for r in reports)
        orphaned = sum(r.orphaned for r in reports)

        if not failures:
            self.state = SyncState.SUCCEEDED
            return SyncOutcome.SUCCEEDED, None, None

        shown = ", ".join(f"{f.operation}:{f.key} ({f.error})" for f in failures[:20])
        if len(failures) > 20:
            shown += f", ... {len(failures) - 20} more"
        detail = f"Failed to write {len(failures)} item(s): {shown}"

        if written or orphaned:
            self.state = SyncState.PARTIAL
            return SyncOutcome.PARTIAL, ITEMS_FAILED, detail

        self.state = SyncState.FAILED
        return SyncOutcome.FAILED, ITEMS_FAILED, detail

    def _finalize(
        self,
        connection: IntegrationConnection,
        provider: Provider,
        entry: SyncLogEntry,
        outcome: SyncOutcome,
        reports: List[OperationReport],
        error_code: Optional[str],
        error_detail: Optional[str],
    ) -> SyncLogEntry:
        processed = sum(r.written for r in reports)
        failed = sum(len(r.failures) for r in reports)
        orphaned = sum(r.orphaned for r in reports)

        entry = self.sync_log.finish_entry(
            entry,
            outcome=outcome,
            items_processed=processed,
            items_failed=failed,
            items_orphaned=orphaned,
            error_code=error_code,
            error_detail=error_detail,
            details=[r.to_dict() for r in reports],
        )

        self._record_outcome(connection, entry, outcome, processed)
        self.db.commit()

        sync_items_total.labels(provider=provider.id, result="written").inc(processed)
        sync_items_total.labels(provider=provider.id, result="failed").inc(failed)
        sync_items_total.labels(provider=provider.id, result="orphaned").inc(orphaned)
        return entry

    def _record_outcome(
        self,
        connection: IntegrationConnection,
        entry: SyncLogEntry,
        outcome: SyncOutcome,
        processed: int = 0,
    ) -> None:
        stats = dict(connection.stats or {})
        stats["total_syncs"] = stats.get("total_syncs", 0) + 1
        stats_key = {
            SyncOutcome.SUCCEEDED: "successful_syncs",
            SyncOutcome.PARTIAL: "partial_syncs",
            SyncOutcome.FAILED: "failed_syncs",
        }[outcome]
        stats[stats_key] = stats.get(stats_key, 0) + 1
        stats["items_synced"] = stats.get("items_synced", 0) + processed
        stats["last_sync_duration_ms"] = entry.duration_ms

        connection.last_sync_at = entry.finished_at
        connection.stats = stats
        connection.last_error_code = entry.error_code
        connection.last_error = entry.error_detail
        if outcome == SyncOutcome.FAILED:
            connection.sync_status = ConnectionStatus.ERROR.value
        else:
            connection.sync_status = ConnectionStatus.CONNECTED.value

    def recover_stale_entries(self, connection_id: Optional[UUID] = None) -> int:
        """
        Close open entries whose run died before finalizing.

        An entry older than the fetch deadline plus SYNC_STALE_ENTRY_GRACE_SECONDS
        is closed FAILED/TIMEOUT and counted against its connection, which
        frees admission for the next attempt.

        Returns:
            Number of entries closed
        """
        max_age = timedelta(
            seconds=self.settings.SYNC_FETCH_TIMEOUT_SECONDS + self.settings.SYNC_STALE_ENTRY_GRACE_SECONDS
        )
        closed = self.sync_log.close_stale_entries(max_age, connection_id=connection_id)

        for entry in closed:
            connection = self.db.get(IntegrationConnection, entry.connection_id)
            if connection is None:
                continue
            self._record_outcome(connection, entry, SyncOutcome.FAILED)
            sync_runs_total.labels(provider=connection.provider_id, outcome=SyncOutcome.FAILED.value).inc()
        if closed:
            self.db.commit()
        return len(closed)

    # ------------------------------------------------------------------
    # Connection test
    # ------------------------------------------------------------------

    def test_connection(self, connection_id: UUID, requesting_user_id: UUID) -> ConnectionTestResult:
        """
        Check the remote with the stored credentials.

        Stamps last_health_check_at and sets sync_status to connected or
        error. Writes no sync log entry.
        """
        connection = self.store.get_connection(connection_id, requesting_user_id)
        provider = self.registry.get_provider_by_id(connection.provider_id)
        if provider is None:
            raise ValidationError(
                f"Unknown provider: '{connection.provider_id}'",
                details={"provider_id": connection.provider_id},
            )

        client: Optional[ProviderClient] = None
        try:
            client = self._build_client(connection, provider)
            result = client.test_connection()
        except FetchFailed as e:
            result = ConnectionTestResult(success=False, error_message=e.message, error_code=e.error_code)
        finally:
            if client is not None:
                client.close()

        connection.last_health_check_at = result.tested_at
        if result.success:
            connection.sync_status = ConnectionStatus.CONNECTED.value
            connection.last_error = None
            connection.last_error_code = None
        else:
            connection.sync_status = ConnectionStatus.ERROR.value
            connection.last_error = result.error_message
            connection.last_error_code = result.error_code
        self.db.commit()

        logger.info(
            "Connection test finished",
            extra={
                "connection_id": str(connection.id),
                "provider_id": provider.id,
                "outcome": "succeeded" if result.success else "failed",
                "error_code": result.error_code,
            },
        )
        return result

    def test_all_connections(self, requesting_user_id: UUID) -> List[Tuple[IntegrationConnection, ConnectionTestResult]]:
        """
        Test every connection the user owns, newest first.

        A connection that cannot be tested (unknown provider) is reported as a
        failed result instead of aborting the sweep.
        """
        results: List[Tuple[IntegrationConnection, ConnectionTestResult]] = []
        for connection in self.store.list_connections(requesting_user_id):
            try:
                result = self.test_connection(connection.id, requesting_user_id)
            except IntegrationError as e:
                result = ConnectionTestResult(success=False, error_message=e.message, error_code=e.code)
            results.append((connection, result))
        return results
