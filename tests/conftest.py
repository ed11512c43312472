"""Shared fixtures: in-memory SQLite databases and log-entry factories."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from replisync.database.engine import create_sync_engine
from replisync.database.session import init_db
from replisync.storage.triggers import track_table
from replisync.sync.entry import SyncLogEntry, SyncOperation

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

APP_SCHEMA = [
    "CREATE TABLE Person (id TEXT PRIMARY KEY, name TEXT NOT NULL, email TEXT)",
    "CREATE TABLE Orders ("
    " id TEXT PRIMARY KEY,"
    " person_id TEXT NOT NULL REFERENCES Person(id),"
    " amount REAL)",
    "CREATE TABLE Enrollment ("
    " student_id TEXT NOT NULL,"
    " course_id TEXT NOT NULL,"
    " grade TEXT,"
    " PRIMARY KEY (student_id, course_id))",
]

APP_TABLES = ["Person", "Orders", "Enrollment"]


def make_database():
    engine = create_sync_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    with engine.begin() as conn:
        for statement in APP_SCHEMA:
            conn.exec_driver_sql(statement)
    return engine, sessionmaker(autoflush=False, bind=engine)


def track_app_tables(session_factory) -> None:
    with session_factory() as db:
        for table_name in APP_TABLES:
            track_table(db, table_name)
        db.commit()


@pytest.fixture
def database():
    """Factory for independent in-memory databases with the app schema."""
    engines = []

    def _make():
        engine, factory = make_database()
        engines.append(engine)
        return factory

    yield _make
    for engine in engines:
        engine.dispose()


@pytest.fixture
def hub_sessions(database):
    return database()


@pytest.fixture
def replica_sessions(database):
    return database()


@pytest.fixture
def make_entry() -> Callable[..., SyncLogEntry]:
    def _make(
        version: int,
        table_name: str = "Person",
        pk: Optional[Dict[str, Any]] = None,
        operation: str = "insert",
        payload: Optional[Dict[str, Any]] = None,
        origin: str = "remote",
        timestamp: Optional[datetime] = None,
    ) -> SyncLogEntry:
        op = SyncOperation(operation)
        pk = pk if pk is not None else {"id": f"p{version}"}
        if payload is None and op is not SyncOperation.DELETE:
            payload = {**pk, "name": f"name-{version}"}
        return SyncLogEntry(
            version=version,
            table_name=table_name,
            pk_value=pk,
            operation=op,
            payload=payload,
            origin=origin,
            timestamp=timestamp or BASE_TIME + timedelta(seconds=version),
        )

    return _make


# =============================================================================
# Hub application
# =============================================================================

HUB_ORIGIN = "hub"


@pytest.fixture
def subscription_hub():
    from replisync.sync.subscriptions import SubscriptionHub

    hub = SubscriptionHub(queue_capacity=100)
    yield hub
    hub.close()


@pytest.fixture
def hub_app(hub_sessions, subscription_hub):
    """The FastAPI app wired to an in-memory hub database."""
    from main import app
    from replisync.api.dependencies import get_subscription_hub
    from replisync.database.session import get_db
    from replisync.storage.replica import SqlReplicaStore

    track_app_tables(hub_sessions)
    with hub_sessions() as db:
        SqlReplicaStore(db, origin_id=HUB_ORIGIN)

    def override_get_db():
        db = hub_sessions()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_subscription_hub] = lambda: subscription_hub
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api(hub_app):
    from fastapi.testclient import TestClient

    return TestClient(hub_app)
