"""Shared test fixtures for the WassyPay intake and settlement tests.

Uses a SQLite database so tests run without PostgreSQL.
"""

from __future__ import annotations

import os

# Override DATABASE_URL before importing anything from app: the Settings
# model reads .env eagerly via pydantic-settings, and the module-level
# ``engine`` in app.core.database would try to connect to PostgreSQL.
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["SCANNER_ENABLED"] = "false"
os.environ["VAULT_PUBLIC_KEY"] = "VauLt1111111111111111111111111111111111111"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from app.api.deps import get_chain_client, get_feed_client
from app.core.database import Base, get_db
from app.main import app
from app.services.settlement.claims import ClaimService
from app.services.store.memory_store import InMemoryPaymentStore
from app.services.store.sql_store import SqlPaymentStore
from fakes import FakeChain, FakeFeed, make_claim_service

# Use SQLite file-based database for tests (no PostgreSQL needed)
TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)


@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    """Opens extra sessions on the test database, one per worker thread."""
    return TestingSessionLocal


@pytest.fixture(params=["sql", "memory"])
def store(request, db_session):
    """Each store-contract test runs against both backends."""
    if request.param == "sql":
        return SqlPaymentStore(db_session)
    return InMemoryPaymentStore()


@pytest.fixture
def memory_store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def claim_service(memory_store, chain) -> ClaimService:
    return make_claim_service(memory_store, chain)


@pytest.fixture(scope="function")
def client(db_session, chain, feed):
    """FastAPI test client with the DB and external clients overridden."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chain_client] = lambda: chain
    app.dependency_overrides[get_feed_client] = lambda: feed
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
