"""Shared fixtures: in-memory SQLite, seeded users and a TestClient bound to it."""
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import Base, enable_sqlite_savepoints, get_db, get_settings  # noqa: E402
from models import User, UserRole  # noqa: E402

ADMIN_ID = "u-admin"
WORKER_ID = "u-worker"
WORKER2_ID = "u-worker-2"
GUEST_ID = "u-guest"


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No backoff sleeps in tests."""
    monkeypatch.setattr(get_settings(), "io_retry_delay_seconds", 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def users(session_factory):
    session = session_factory()
    session.add_all([
        User(id=ADMIN_ID, name="Admin", role=UserRole.ADMIN),
        User(id=WORKER_ID, name="Worker", role=UserRole.WORKER),
        User(id=WORKER2_ID, name="Second Worker", role=UserRole.WORKER),
        User(id=GUEST_ID, name="Guest", role=UserRole.GUEST),
    ])
    session.commit()
    session.close()
    return {"admin": ADMIN_ID, "worker": WORKER_ID, "worker2": WORKER2_ID, "guest": GUEST_ID}


@pytest.fixture
def db_session(session_factory, users):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory, users):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
