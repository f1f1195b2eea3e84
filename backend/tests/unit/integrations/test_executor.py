"""Unit tests for the sync executor

Tests cover:
- Pull, push and bidirectional writes against an in-memory provider
- Partial failure isolation (one bad item does not abort the batch)
- Retry with exponential backoff, non-retryable errors, the fetch deadline
- Single-flight admission across sessions
- Exactly one closed log entry per admitted attempt
- Connection status, stats and error fields after each outcome
- Connection tests, single and for every owned connection
- Recovery of entries abandoned by a dead worker
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from canvasflow.integrations.clients import InMemoryProviderClient, ProviderClientRegistry
from canvasflow.integrations.errors import (
    AlreadyInProgressError,
    AuthExpiredError,
    AuthorizationError,
    FatalProviderError,
    ProviderTimeoutError,
    TransientProviderError,
    ValidationError,
)
from canvasflow.integrations.executor import (
    CREDENTIALS_INVALID,
    ITEMS_FAILED,
    RecordWriter,
    SyncExecutor,
    SyncState,
)
from canvasflow.integrations.providers import SyncOperation
from canvasflow.integrations.sync_log import SyncLog
from canvasflow.models import SyncedRecord, SyncLogEntry
from canvasflow.models.base import utcnow


PRODUCTS = SyncOperation.IMPORT_PRODUCTS


def _records(db_session, connection, operation=PRODUCTS):
    db_session.expire_all()
    rows = (
        db_session.query(SyncedRecord)
        .filter_by(connection_id=connection.id, operation=operation.value)
        .all()
    )
    return {row.external_key: row for row in rows}


def connection_stats(db_session, connection):
    db_session.refresh(connection)
    return connection.stats


def _entries(db_session, connection):
    db_session.expire_all()
    return db_session.query(SyncLogEntry).filter_by(connection_id=connection.id).all()


class FailingWriter(RecordWriter):
    """Writer that fails upserts for chosen keys."""

    def __init__(self, db, failing_keys):
        super().__init__(db)
        self.failing_keys = set(failing_keys)

    def upsert(self, connection, operation, remote, existing):
        if remote.key in self.failing_keys:
            raise ValueError(f"cannot store {remote.key}")
        return super().upsert(connection, operation, remote, existing)


class TestPull:
    """Test pull-direction syncs"""

    def test_new_changed_and_unchanged(self, make_connection, make_executor, fake_client, seed_record, db_session):
        """3 new + 1 changed are written; the unchanged record is skipped"""
        connection = make_connection(sync_direction="pull")
        seed_record(connection, PRODUCTS.value, "A", {"sku": "A", "price": 10})
        seed_record(connection, PRODUCTS.value, "B", {"sku": "B", "price": 20})
        fake_client.records[PRODUCTS] = [
            {"sku": "A", "price": 11},
            {"sku": "B", "price": 20},
            {"sku": "C", "price": 30},
            {"sku": "D", "price": 40},
            {"sku": "E", "price": 50},
        ]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "succeeded"
        assert entry.items_processed == 4
        assert entry.items_failed == 0
        assert entry.error_code is None
        assert entry.finished_at is not None
        assert entry.details[0]["diff"]["unchanged"] == 1

        records = _records(db_session, connection)
        assert set(records) == {"A", "B", "C", "D", "E"}
        assert records["A"].payload["price"] == 11
        assert all(r.remote_confirmed for r in records.values())

        db_session.refresh(connection)
        assert connection.status == "connected"
        assert connection.last_sync_at == entry.finished_at
        assert connection.stats["total_syncs"] == 1
        assert connection.stats["successful_syncs"] == 1
        assert connection.stats["items_synced"] == 4

    def test_rerun_is_idempotent(self, make_connection, make_executor, fake_client, db_session):
        """A second run over unchanged remote data writes nothing"""
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 2}]
        executor = make_executor()

        first = executor.run(connection.id, connection.user_id, operations=["import_products"])
        before = {k: (r.content_hash, r.updated_at) for k, r in _records(db_session, connection).items()}
        second = executor.run(connection.id, connection.user_id, operations=["import_products"])
        after = {k: (r.content_hash, r.updated_at) for k, r in _records(db_session, connection).items()}

        assert first.items_processed == 2
        assert second.outcome == "succeeded"
        assert second.items_processed == 0
        assert second.items_orphaned == 0
        assert before == after

    def test_missing_remote_records_are_orphaned_not_deleted(self, make_connection, make_executor, fake_client, seed_record, db_session):
        connection = make_connection(sync_direction="pull")
        seed_record(connection, PRODUCTS.value, "KEEP", {"sku": "KEEP"})
        seed_record(connection, PRODUCTS.value, "GONE", {"sku": "GONE"})
        fake_client.records[PRODUCTS] = [{"sku": "KEEP"}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "succeeded"
        assert entry.items_orphaned == 1
        assert entry.items_processed == 0
        records = _records(db_session, connection)
        assert records["GONE"].orphaned_at is not None
        assert records["KEEP"].orphaned_at is None

    def test_returning_orphan_is_relinked(self, make_connection, make_executor, fake_client, seed_record, db_session):
        connection = make_connection(sync_direction="pull")
        seed_record(connection, PRODUCTS.value, "BACK", {"sku": "BACK"}, orphaned_at=utcnow())
        fake_client.records[PRODUCTS] = [{"sku": "BACK"}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.items_processed == 1
        assert _records(db_session, connection)["BACK"].orphaned_at is None

    def test_all_supported_operations_by_default(self, make_connection, make_executor, fake_client):
        """No operations means every operation the provider supports"""
        connection = make_connection(sync_direction="pull")

        entry = make_executor().run(connection.id, connection.user_id)

        assert sorted(entry.operations) == sorted(op.value for op in SyncOperation)
        assert fake_client.fetch_calls == len(SyncOperation)
        assert entry.outcome == "succeeded"

    def test_orders_keyed_by_order_id(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.records[SyncOperation.FETCH_ORDERS] = [{"order_id": "ORD-1", "total": 99}]

        make_executor().run(connection.id, connection.user_id, operations=["fetch_orders"])

        assert set(_records(db_session, connection, SyncOperation.FETCH_ORDERS)) == {"ORD-1"}


class TestPartialFailure:
    """Test per-item failure isolation"""

    def test_overlong_key_fails_only_that_item(self, make_connection, make_executor, fake_client, db_session):
        """4 good items are written, the 256-char key is reported by name"""
        connection = make_connection(sync_direction="pull")
        bad_key = "X" * 256
        fake_client.records[PRODUCTS] = [
            {"sku": "A"}, {"sku": "B"}, {"sku": bad_key}, {"sku": "C"}, {"sku": "D"},
        ]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "partial"
        assert entry.items_processed == 4
        assert entry.items_failed == 1
        assert entry.error_code == ITEMS_FAILED
        assert bad_key in entry.error_detail
        assert entry.details[0]["failed"][0]["key"] == bad_key
        assert set(_records(db_session, connection)) == {"A", "B", "C", "D"}

        db_session.refresh(connection)
        assert connection.status == "connected"
        assert connection.last_error_code == ITEMS_FAILED
        assert connection.stats["partial_syncs"] == 1

    def test_writer_failure_is_isolated(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": s} for s in ("A", "B", "C", "D", "E")]
        executor = make_executor(writer=FailingWriter(db_session, {"C"}))

        entry = executor.run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "partial"
        assert entry.items_processed == 4
        assert "import_products:C (cannot store C)" in entry.error_detail
        assert set(_records(db_session, connection)) == {"A", "B", "D", "E"}

    def test_every_item_failing_is_a_failure(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A"}, {"sku": "B"}]
        executor = make_executor(writer=FailingWriter(db_session, {"A", "B"}))

        entry = executor.run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "failed"
        assert entry.error_code == ITEMS_FAILED
        assert entry.items_failed == 2
        db_session.refresh(connection)
        assert connection.status == "error"

    def test_items_without_a_key_fail(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A"}, {"name": "no key"}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "partial"
        assert entry.items_processed == 1
        assert entry.items_failed == 1

    def test_each_keyless_item_fails_separately(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A"}, {"name": "x"}, {"name": "y"}, {"sku": None}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "partial"
        assert entry.items_processed == 1
        assert entry.items_failed == 3
        assert entry.details[0]["diff"]["keyless"] == 3
        assert "duplicate_keys" not in entry.details[0]
        assert list(_records(db_session, connection)) == ["A"]


class TestFetchErrors:
    """Test retry, backoff and non-retryable fetch errors"""

    def test_auth_expired_fails_without_retry(self, make_connection, make_executor, fake_client, clock, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [AuthExpiredError("token revoked")]

        executor = make_executor()
        entry = executor.run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "failed"
        assert entry.error_code == "AUTH_EXPIRED"
        assert entry.items_processed == 0
        assert fake_client.fetch_calls == 1
        assert clock.sleeps == []
        assert executor.state == SyncState.FAILED

        db_session.refresh(connection)
        assert connection.status == "error"
        assert connection.last_error_code == "AUTH_EXPIRED"
        assert connection.stats["failed_syncs"] == 1

    def test_transient_errors_retried_with_backoff(self, make_connection, make_executor, fake_client, clock):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [TransientProviderError("503"), TransientProviderError("503")]
        fake_client.records[PRODUCTS] = [{"sku": "A"}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "succeeded"
        assert entry.items_processed == 1
        assert fake_client.fetch_calls == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_retries_exhausted(self, make_connection, make_executor, fake_client, clock):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [TransientProviderError("reset")] * 3

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "failed"
        assert entry.error_code == "RETRIES_EXHAUSTED"
        assert fake_client.fetch_calls == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_fatal_error_not_retried(self, make_connection, make_executor, fake_client):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [FatalProviderError("HTTP 400")]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.error_code == "FETCH_FAILED"
        assert fake_client.fetch_calls == 1

    def test_provider_timeout_not_retried(self, make_connection, make_executor, fake_client):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [ProviderTimeoutError("read timed out")]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.error_code == "TIMEOUT"
        assert fake_client.fetch_calls == 1

    def test_slow_fetch_exceeds_deadline(self, make_connection, make_executor, fake_client, clock, db_session):
        """A fetch that returns after the deadline fails the attempt with TIMEOUT"""
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A"}]

        def slow(operation):
            clock.now += 500

        fake_client.on_fetch = slow

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "failed"
        assert entry.error_code == "TIMEOUT"
        assert _records(db_session, connection) == {}

    def test_backoff_past_deadline_times_out(self, make_connection, make_executor, fake_client, clock, test_settings):
        """No retry is scheduled when its delay would cross the deadline"""
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [TransientProviderError("503")] * 3
        settings = test_settings.model_copy(update={"SYNC_RETRY_DELAY_BASE": 50.0})

        entry = make_executor(settings=settings).run(
            connection.id, connection.user_id, operations=["import_products"]
        )

        assert entry.error_code == "TIMEOUT"
        assert clock.sleeps == [50.0]
        assert fake_client.fetch_calls == 2

    def test_malformed_records_fail_fetch(self, make_connection, make_executor, fake_client):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_records = Mock(return_value=["not", "objects"])

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.error_code == "FETCH_FAILED"

    def test_later_success_clears_error(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [AuthExpiredError("expired")]
        executor = make_executor()

        executor.run(connection.id, connection.user_id, operations=["import_products"])
        executor.run(connection.id, connection.user_id, operations=["import_products"])

        db_session.refresh(connection)
        assert connection.status == "connected"
        assert connection.last_error is None
        assert connection.last_error_code is None


class TestPushAndBidirectional:
    """Test push and bidirectional writes"""

    def test_push_sends_local_only_and_changed(self, make_connection, make_executor, fake_client, seed_record, db_session):
        connection = make_connection(sync_direction="push")
        seed_record(connection, PRODUCTS.value, "LOCAL", {"sku": "LOCAL", "qty": 5}, confirmed=False)
        seed_record(connection, PRODUCTS.value, "EDITED", {"sku": "EDITED", "qty": 7})
        fake_client.records[PRODUCTS] = [{"sku": "EDITED", "qty": 1}, {"sku": "REMOTE", "qty": 3}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "succeeded"
        assert entry.items_processed == 2
        assert {p["sku"] for p in fake_client.pushed} == {"LOCAL", "EDITED"}
        records = _records(db_session, connection)
        assert set(records) == {"LOCAL", "EDITED"}
        assert records["LOCAL"].remote_confirmed is True
        assert records["EDITED"].payload["qty"] == 7

    def test_push_failure_is_isolated(self, make_connection, make_executor, fake_client, seed_record):
        connection = make_connection(sync_direction="push")
        seed_record(connection, PRODUCTS.value, "OK", {"sku": "OK"}, confirmed=False)
        seed_record(connection, PRODUCTS.value, "BAD", {"sku": "BAD"}, confirmed=False)
        fake_client.push_failures = {"BAD"}

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "partial"
        assert entry.items_processed == 1
        assert "import_products:BAD" in entry.error_detail

    def test_bidirectional_pulls_and_pushes(self, make_connection, make_executor, fake_client, seed_record, db_session):
        """Remote records are pulled, unconfirmed local ones pushed, confirmed missing ones orphaned"""
        connection = make_connection(sync_direction="bidirectional")
        seed_record(connection, PRODUCTS.value, "NEW-LOCAL", {"sku": "NEW-LOCAL"}, confirmed=False)
        seed_record(connection, PRODUCTS.value, "DELETED-REMOTELY", {"sku": "DELETED-REMOTELY"})
        fake_client.records[PRODUCTS] = [{"sku": "REMOTE"}]

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "succeeded"
        assert entry.items_processed == 2
        assert entry.items_orphaned == 1
        assert [p["sku"] for p in fake_client.pushed] == ["NEW-LOCAL"]
        records = _records(db_session, connection)
        assert records["REMOTE"].remote_confirmed is True
        assert records["NEW-LOCAL"].remote_confirmed is True
        assert records["DELETED-REMOTELY"].orphaned_at is not None

    def test_direction_captured_at_admission(self, make_connection, make_executor):
        """The log entry records the direction the attempt ran with"""
        connection = make_connection(sync_direction="pull")

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.direction == "pull"


class TestAdmission:
    """Test pre-admission checks and single-flight admission"""

    def test_disabled_connection_rejected(self, make_connection, make_executor, store, db_session):
        connection = make_connection()
        store.update_connection(connection.id, connection.user_id, {"enabled": False})

        with pytest.raises(ValidationError, match="disabled"):
            make_executor().run(connection.id, connection.user_id)

        assert _entries(db_session, connection) == []

    def test_unsupported_operation_rejected(self, make_connection, make_executor, db_session):
        connection = make_connection("trendyol")

        with pytest.raises(ValidationError, match="does not support"):
            make_executor().run(connection.id, connection.user_id, operations=["export_orders"])

        assert _entries(db_session, connection) == []

    def test_unknown_operation_rejected(self, make_connection, make_executor):
        connection = make_connection()

        with pytest.raises(ValidationError, match="Unknown operation"):
            make_executor().run(connection.id, connection.user_id, operations=["teleport"])

    def test_other_user_rejected(self, make_connection, make_executor, other_user_id, db_session):
        connection = make_connection()

        with pytest.raises(AuthorizationError):
            make_executor().run(connection.id, other_user_id)

        assert _entries(db_session, connection) == []

    def test_concurrent_trigger_rejected(self, make_connection, make_executor, fake_client, session_factory, db_session):
        """A second attempt started while the first is fetching gets AlreadyInProgressError"""
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A"}]
        first_session, second_session = session_factory(), session_factory()
        rejected = []

        def trigger_second(operation):
            try:
                make_executor(db=second_session).run(
                    connection.id, connection.user_id, operations=["import_products"]
                )
            except AlreadyInProgressError as e:
                rejected.append(e)

        fake_client.on_fetch = trigger_second
        try:
            entry = make_executor(db=first_session).run(
                connection.id, connection.user_id, operations=["import_products"]
            )
        finally:
            first_session.close()
            second_session.close()

        assert len(rejected) == 1
        assert entry.outcome == "succeeded"
        assert len(_entries(db_session, connection)) == 1

    def test_one_closed_entry_per_attempt(self, make_connection, make_executor, fake_client, db_session):
        """Succeeded, failed and partial attempts each leave one finished entry"""
        connection = make_connection(sync_direction="pull")
        executor = make_executor()
        fake_client.records[PRODUCTS] = [{"sku": "A"}, {"sku": "Y" * 300}]

        executor.run(connection.id, connection.user_id, operations=["import_products"])
        fake_client.fetch_errors = [AuthExpiredError("expired")]
        executor.run(connection.id, connection.user_id, operations=["import_products"])
        fake_client.records[PRODUCTS] = [{"sku": "A"}]
        executor.run(connection.id, connection.user_id, operations=["import_products"])

        entries = _entries(db_session, connection)
        assert len(entries) == 3
        assert all(e.finished_at is not None for e in entries)
        assert sorted(e.outcome for e in entries) == ["failed", "partial", "succeeded"]
        assert SyncLog(db_session).get_open_entry(connection.id) is None

    def test_abandoned_open_entry_is_closed_before_admission(self, make_connection, make_executor, fake_client, db_session):
        """An entry left open by a dead worker is closed FAILED/TIMEOUT instead of blocking forever"""
        connection = make_connection(sync_direction="pull")
        fake_client.records[PRODUCTS] = [{"sku": "A"}]
        abandoned = SyncLog(db_session).append_entry(SyncLogEntry(
            connection_id=connection.id,
            started_at=utcnow() - timedelta(hours=1),
            direction="pull",
            operations=["import_products"],
        ))

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "succeeded"
        db_session.expire_all()
        closed = db_session.get(SyncLogEntry, abandoned.id)
        assert closed.outcome == "failed"
        assert closed.error_code == "TIMEOUT"
        assert connection_stats(db_session, connection)["failed_syncs"] == 1

    def test_recent_open_entry_still_blocks(self, make_connection, make_executor, db_session):
        connection = make_connection(sync_direction="pull")
        SyncLog(db_session).append_entry(SyncLogEntry(
            connection_id=connection.id,
            started_at=utcnow() - timedelta(seconds=30),
            direction="pull",
            operations=["import_products"],
        ))

        with pytest.raises(AlreadyInProgressError):
            make_executor().run(connection.id, connection.user_id, operations=["import_products"])

    def test_recover_marks_connection_failed(self, make_connection, make_executor, db_session):
        connection = make_connection(sync_direction="pull")
        SyncLog(db_session).append_entry(SyncLogEntry(
            connection_id=connection.id,
            started_at=utcnow() - timedelta(hours=1),
            direction="pull",
            operations=["import_products"],
        ))

        assert make_executor().recover_stale_entries() == 1

        db_session.refresh(connection)
        assert connection.status == "error"
        assert connection.last_error_code == "TIMEOUT"
        assert SyncLog(db_session).get_open_entry(connection.id) is None

    def test_unreadable_credentials_fail_inside_attempt(self, make_connection, make_executor, db_session):
        connection = make_connection()
        connection.credentials_encrypted = b"\x00" * 40
        db_session.commit()

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "failed"
        assert entry.error_code == CREDENTIALS_INVALID

    def test_unexpected_error_closes_entry(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_records = Mock(side_effect=KeyError("boom"))

        entry = make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        assert entry.outcome == "failed"
        assert entry.error_code == "INTERNAL_ERROR"
        assert SyncLog(db_session).get_open_entry(connection.id) is None

    def test_client_is_closed(self, make_connection, make_executor, fake_client):
        connection = make_connection(sync_direction="pull")
        fake_client.close = Mock()

        make_executor().run(connection.id, connection.user_id, operations=["import_products"])

        fake_client.close.assert_called_once()


class TestConnectionTest:
    """Test SyncExecutor.test_connection()"""

    def test_success_marks_connected(self, make_connection, make_executor, db_session):
        connection = make_connection()

        result = make_executor().test_connection(connection.id, connection.user_id)

        assert result.success is True
        db_session.refresh(connection)
        assert connection.status == "connected"
        assert connection.last_health_check_at is not None
        assert _entries(db_session, connection) == []

    def test_failure_records_error(self, make_connection, make_executor, fake_client, db_session):
        connection = make_connection()
        fake_client.test_error = AuthExpiredError("HTTP 401: credentials rejected")

        result = make_executor().test_connection(connection.id, connection.user_id)

        assert result.success is False
        assert result.error_code == "AUTH_EXPIRED"
        db_session.refresh(connection)
        assert connection.status == "error"
        assert connection.last_error_code == "AUTH_EXPIRED"

    def test_uses_registered_client(self, make_connection, db_session, test_settings):
        """Clients registered for a provider take precedence over the default"""
        connection = make_connection()
        registry = ProviderClientRegistry(default_factory=Mock(side_effect=AssertionError))
        dedicated = InMemoryProviderClient()
        registry.register("shop-x", lambda provider, credentials: dedicated)

        executor = SyncExecutor(db_session, client_registry=registry, settings=test_settings)
        result = executor.test_connection(connection.id, connection.user_id)

        assert result.success is True

    def test_success_clears_previous_error(self, make_connection, make_executor, fake_client, db_session):
        """A passing test leaves no stale error next to the connected status"""
        connection = make_connection(sync_direction="pull")
        fake_client.fetch_errors = [AuthExpiredError("rejected")]
        executor = make_executor()
        executor.run(connection.id, connection.user_id, operations=["import_products"])

        result = executor.test_connection(connection.id, connection.user_id)

        assert result.success is True
        db_session.refresh(connection)
        assert connection.status == "connected"
        assert connection.last_error is None
        assert connection.last_error_code is None


class TestConnectionTestAll:
    """Test SyncExecutor.test_all_connections()"""

    def test_tests_every_owned_connection(self, make_connection, make_executor, client_registry, other_user_id, user_id, db_session):
        healthy = make_connection("shop-x")
        rejected = make_connection("trendyol")
        make_connection("shop-x", owner=other_user_id)
        client_registry.register(
            "trendyol",
            lambda provider, credentials: InMemoryProviderClient(test_error=AuthExpiredError("rejected")),
        )

        results = make_executor().test_all_connections(user_id)

        by_id = {connection.id: result for connection, result in results}
        assert set(by_id) == {healthy.id, rejected.id}
        assert by_id[healthy.id].success is True
        assert by_id[rejected.id].success is False
        assert by_id[rejected.id].error_code == "AUTH_EXPIRED"
        db_session.refresh(rejected)
        assert rejected.status == "error"
        assert rejected.last_health_check_at is not None

    def test_no_connections(self, make_executor, user_id):
        assert make_executor().test_all_connections(user_id) == []
