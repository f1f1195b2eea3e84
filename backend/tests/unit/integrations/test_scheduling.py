"""Unit tests for frequency scheduling and the Celery tasks

Tests cover:
- next_sync_due() per frequency
- Which connections are due
- run_due_syncs() summary, including skipped in-progress connections and
  recovery of abandoned entries
- run_due_syncs_task and prune_sync_logs_task
"""

from datetime import timedelta

import pytest

from canvasflow import database
from canvasflow.integrations import scheduling, tasks
from canvasflow.integrations.executor import SyncExecutor
from canvasflow.integrations.scheduling import (
    find_due_connections,
    next_sync_due,
    run_due_syncs,
)
from canvasflow.integrations.sync_log import SyncLog
from canvasflow.models import SyncLogEntry, SyncOutcome
from canvasflow.models.base import utcnow


class TestNextSyncDue:
    """Test next_sync_due()"""

    def test_never_synced_is_due_now(self, make_connection):
        connection = make_connection(sync_frequency="daily")
        now = utcnow()

        assert next_sync_due(connection, now) == now

    @pytest.mark.parametrize("frequency,interval", [
        ("realtime", timedelta(minutes=5)),
        ("hourly", timedelta(hours=1)),
        ("daily", timedelta(days=1)),
        ("weekly", timedelta(days=7)),
    ])
    def test_interval_after_last_sync(self, make_connection, db_session, frequency, interval):
        connection = make_connection(sync_frequency=frequency)
        last = utcnow() - timedelta(minutes=1)
        connection.last_sync_at = last
        db_session.commit()

        assert next_sync_due(connection) == last + interval

    def test_manual_is_never_due(self, make_connection):
        connection = make_connection(sync_frequency="manual")

        assert next_sync_due(connection) is None


class TestFindDueConnections:
    """Test find_due_connections()"""

    def test_selects_due_enabled_connections(self, make_connection, store, user_id, db_session):
        now = utcnow()
        never = make_connection("shop-x", sync_frequency="hourly")
        stale = make_connection("trendyol", sync_frequency="hourly")
        stale.last_sync_at = now - timedelta(hours=2)
        fresh = make_connection("n11", credentials={"api_key": "k", "api_secret": "s"}, sync_frequency="daily")
        fresh.last_sync_at = now - timedelta(hours=2)
        manual = make_connection("dhl", credentials={"api_key": "k", "api_secret": "s"}, sync_frequency="manual")
        db_session.commit()
        disabled = make_connection("parasut", credentials={
            "company_id": "1", "client_id": "c", "client_secret": "s", "username": "u", "password": "p",
        })
        store.update_connection(disabled.id, user_id, {"enabled": False})

        due = find_due_connections(db_session, now)

        assert {c.id for c in due} == {never.id, stale.id}
        assert fresh.id not in {c.id for c in due}
        assert manual.id not in {c.id for c in due}


class TestRunDueSyncs:
    """Test run_due_syncs()"""

    def test_runs_each_due_connection(self, make_connection, make_executor, db_session):
        make_connection("shop-x", sync_direction="pull")
        make_connection("trendyol", sync_direction="pull")

        summary = run_due_syncs(db_session, executor=make_executor())

        assert summary.due == 2
        assert summary.started == 2
        assert summary.outcomes == {"succeeded": 2}
        assert db_session.query(SyncLogEntry).count() == 2

    def test_skips_connections_already_syncing(self, make_connection, make_executor, db_session):
        connection = make_connection("shop-x")
        SyncLog(db_session).append_entry(
            SyncLogEntry(connection_id=connection.id, direction="pull", operations=[])
        )

        summary = run_due_syncs(db_session, executor=make_executor())

        assert summary.due == 1
        assert summary.started == 0
        assert summary.skipped_in_progress == 1

    def test_abandoned_entries_recovered_first(self, make_connection, make_executor, db_session):
        """A connection stuck behind a dead worker's open entry is freed, not skipped forever"""
        connection = make_connection("shop-x", sync_frequency="manual")
        SyncLog(db_session).append_entry(SyncLogEntry(
            connection_id=connection.id,
            started_at=utcnow() - timedelta(days=1),
            direction="pull",
            operations=[],
        ))

        summary = run_due_syncs(db_session, executor=make_executor())

        assert summary.recovered == 1
        assert summary.to_dict()["recovered"] == 1
        assert SyncLog(db_session).get_open_entry(connection.id) is None

    def test_synced_connection_not_due_again(self, make_connection, make_executor, db_session):
        make_connection("shop-x", sync_frequency="hourly")
        executor = make_executor()

        run_due_syncs(db_session, executor=executor)
        summary = run_due_syncs(db_session, executor=executor)

        assert summary.due == 0
        assert summary.to_dict()["started"] == 0


class TestTasks:
    """Test the Celery task entry points"""

    @pytest.fixture(autouse=True)
    def use_test_database(self, monkeypatch, session_factory):
        monkeypatch.setattr(database, "SessionLocal", session_factory)

    def test_run_due_syncs_task(self, monkeypatch, make_connection, client_registry, test_settings, clock):
        make_connection("shop-x", sync_direction="pull")
        monkeypatch.setattr(
            scheduling,
            "SyncExecutor",
            lambda db: SyncExecutor(
                db, client_registry=client_registry, settings=test_settings, sleep=clock.sleep, clock=clock
            ),
        )

        result = tasks.run_due_syncs_task()

        assert result["due"] == 1
        assert result["started"] == 1
        assert result["outcomes"] == {"succeeded": 1}

    def test_prune_sync_logs_task(self, make_connection, db_session, session_factory):
        connection = make_connection()
        sync_log = SyncLog(db_session)
        started = utcnow() - timedelta(days=365)
        old = sync_log.append_entry(
            SyncLogEntry(connection_id=connection.id, started_at=started, direction="pull", operations=[])
        )
        sync_log.finish_entry(old, SyncOutcome.SUCCEEDED, finished_at=started + timedelta(seconds=5))
        recent = sync_log.append_entry(
            SyncLogEntry(connection_id=connection.id, direction="pull", operations=[])
        )
        sync_log.finish_entry(recent, SyncOutcome.FAILED)

        result = tasks.prune_sync_logs_task()

        assert result["status"] == "completed"
        assert result["deleted"] == 1
        assert result["retention_days"] == 90
        db_session.expire_all()
        assert [e.id for e in db_session.query(SyncLogEntry).all()] == [recent.id]
