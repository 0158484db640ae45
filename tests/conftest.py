import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

import config
import services
import store
from exceptions import BackendError


@pytest.fixture
def engine(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    monkeypatch.setattr(store, "engine", engine)
    monkeypatch.setattr(config, "REDIS_URL", None)
    monkeypatch.setattr(config, "ADMIN_PASS", None)
    monkeypatch.setattr(config, "CLINIC_NAME", None)
    monkeypatch.setattr(config, "ATOMIC_UPDATES", False)
    monkeypatch.setattr(services, "_redis_client", None)
    store.init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine):
    from main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def fake_redis(engine, monkeypatch):
    """In-process Redis installed as the service's client."""
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(config, "REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setattr(services, "_redis_client", client)
    yield client
    client.flushall()


@pytest.fixture
def fail_on_call(monkeypatch):
    """Make the n-th call to ``store.<name>`` raise ``BackendError``.

    Returns a dict whose ``count`` key tracks how many calls were made.
    """

    def install(name, n):
        original = getattr(store, name)
        calls = {"count": 0}

        def wrapper(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == n:
                raise BackendError("injected failure")
            return original(*args, **kwargs)

        monkeypatch.setattr(store, name, wrapper)
        return calls

    return install


def positions(session):
    """``{patient_name: position}`` for the ongoing queue, read fresh."""
    session.expire_all()
    return {e.patient_name: e.position for e in services.list_ongoing(session)}
