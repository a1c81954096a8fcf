"""Shared test fixtures."""
from datetime import datetime
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

import config
import services
import store
from models import User, WalkIn

# Monday; the seeded hours are Mon-Fri 09:00-17:00 in 15 minute slots.
NOW = datetime(2025, 6, 9, 9, 0)
ADMIN = "demo"


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Run without redis unless a test installs a mock."""
    monkeypatch.setattr(config, "REDIS_URL", None)
    monkeypatch.setattr(services, "_redis_client", None)
    yield


@pytest.fixture
def engine():
    engine = store.make_engine("sqlite://")
    store.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def user(session) -> User:
    return store.upsert_user(session, "Jane Doe", "+15550001111", None, NOW)


@pytest.fixture
def other_user(session) -> User:
    return store.upsert_user(session, "John Roe", "+15550002222", None, NOW)


@pytest.fixture
def book(session, user):
    """Create a booked appointment for ``user`` at the given datetime."""
    def _book(when: datetime, owner: User = None):
        return store.create_appointment(session, (owner or user).id, when, NOW)
    return _book


@pytest.fixture
def clock():
    """Mutable current time for API tests."""
    class Clock:
        value = NOW

    return Clock


@pytest.fixture
def client(engine, clock):
    import main

    def _session():
        with Session(engine) as session:
            yield session

    main.app.dependency_overrides[store.get_session] = _session
    main.app.dependency_overrides[main.get_now] = lambda: clock.value
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def failing_walk_in_flush(session):
    """Make the flush that inserts a walk-in fail with a storage error."""
    real_flush = session.flush

    def _flush(*args, **kwargs):
        if any(isinstance(obj, WalkIn) for obj in session.new):
            raise OperationalError("INSERT INTO walk_ins", {}, Exception("disk I/O error"))
        return real_flush(*args, **kwargs)

    with patch.object(session, "flush", side_effect=_flush):
        yield
