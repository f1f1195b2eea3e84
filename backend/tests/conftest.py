"""Pytest fixtures for the integration sync workflow.

Provides reusable test fixtures for:
- A file-backed SQLite database per test (tables created and dropped)
- Session factories, so tests can open several independent sessions
- An in-memory provider client and a client registry that hands it out
- Connection factories and SyncedRecord seeding helpers
- An API test client with bearer tokens for two users

Usage:
    def test_pull(make_connection, make_executor, fake_client):
        connection = make_connection("shop-x", sync_direction="pull")
        entry = make_executor().run(connection.id, connection.user_id)
"""

import os

# Set environment variables BEFORE any imports to ensure they take effect
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret-key-256-bits-minimum-length-required-for-security"
os.environ["ENCRYPTION_MASTER_KEY"] = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["LOG_JSON"] = "false"
os.environ["ENVIRONMENT"] = "test"

from typing import Generator
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from canvasflow.auth.jwt import create_access_token
from canvasflow.config import Settings
from canvasflow.database import build_engine, get_db
from canvasflow.integrations.clients import (
    InMemoryProviderClient,
    ProviderClientRegistry,
    get_client_registry,
)
from canvasflow.integrations.executor import SyncExecutor
from canvasflow.integrations.store import ConnectionStore
from canvasflow.models import Base, SyncedRecord


SHOP_X_CREDENTIALS = {"access_token": "shop-x-token"}
TRENDYOL_CREDENTIALS = {"api_key": "key-1", "api_secret": "secret-1", "supplier_id": "12345"}


class FakeClock:
    """Monotonic clock the tests move by hand. sleep() advances it."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(scope="function")
def engine(tmp_path):
    """Fresh SQLite file per test; file-backed so separate sessions see each other's commits."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'canvasflow.db'}")
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_user_id() -> UUID:
    return uuid4()


@pytest.fixture
def store(db_session) -> ConnectionStore:
    return ConnectionStore(db_session)


@pytest.fixture
def fake_client() -> InMemoryProviderClient:
    return InMemoryProviderClient()


@pytest.fixture
def client_registry(fake_client) -> ProviderClientRegistry:
    """Every provider resolves to the same in-memory client."""
    return ProviderClientRegistry(default_factory=lambda provider, credentials: fake_client)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        SYNC_MAX_FETCH_ATTEMPTS=3,
        SYNC_RETRY_DELAY_BASE=1.0,
        SYNC_FETCH_TIMEOUT_SECONDS=120.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_executor(db_session, client_registry, test_settings, clock):
    """Build a SyncExecutor wired to the fake client and clock.

    Keyword arguments override the defaults (db, writer, settings, ...).
    """
    def _make(**overrides) -> SyncExecutor:
        kwargs = {
            "client_registry": client_registry,
            "settings": test_settings,
            "sleep": clock.sleep,
            "clock": clock,
        }
        kwargs.update(overrides)
        db = kwargs.pop("db", db_session)
        return SyncExecutor(db, **kwargs)

    return _make


@pytest.fixture
def make_connection(store, user_id):
    """Create a connection through the store (shop-x by default)."""
    def _make(provider_id: str = "shop-x", credentials=None, owner: UUID = None, **kwargs):
        if credentials is None:
            credentials = TRENDYOL_CREDENTIALS if provider_id == "trendyol" else SHOP_X_CREDENTIALS
        return store.create_connection(
            user_id=owner or user_id,
            provider_id=provider_id,
            credentials=credentials,
            **kwargs,
        )

    return _make


@pytest.fixture
def seed_record(db_session):
    """Insert a SyncedRecord directly, bypassing the executor."""
    def _seed(connection, operation, key, payload, confirmed=True, orphaned_at=None):
        record = SyncedRecord(
            connection_id=connection.id,
            operation=operation,
            external_key=key,
            remote_confirmed=confirmed,
            orphaned_at=orphaned_at,
        )
        record.set_payload(payload)
        db_session.add(record)
        db_session.commit()
        return record

    return _seed


@pytest.fixture
def api_client(session_factory, client_registry) -> Generator[TestClient, None, None]:
    """TestClient whose requests use the per-test database and fake provider client."""
    from canvasflow.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_client_registry] = lambda: client_registry

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user_id) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def other_auth_headers(other_user_id) -> dict:
    return {"Authorization": f"Bearer {create_access_token(other_user_id)}"}
