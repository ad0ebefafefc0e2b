"""Pytest fixtures: sqlite DB, API client, fake clock, recording dispatcher."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("WORKER_TOKEN", "test-worker-token")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from bizzybee.main import app
from bizzybee.database import get_db, get_sync_db
from bizzybee.models import Base, EmailProviderConfig
from bizzybee.relay import Deadline
from bizzybee.routers.pipeline import get_dispatcher
from bizzybee.services import rate_limiter



class FakeClock:
    """Monotonic clock the test advances by hand (or on every read with `step`)."""

    def __init__(self, start: float = 1000.0, step: float = 0.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher:
    """Captures relay hand-offs instead of sending Celery tasks."""

    def __init__(self):
        self.calls = []

    def dispatch(self, task_name, kwargs, countdown_s=0):
        self.calls.append((task_name, dict(kwargs), countdown_s))

    @property
    def last(self):
        return self.calls[-1] if self.calls else None


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Rate limiter fails open without Redis; never try to connect in tests."""
    monkeypatch.setattr(rate_limiter, "_redis_client", None)
    monkeypatch.setattr(rate_limiter, "_redis_unavailable", True)


@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so sync setup code (tests) and async app sessions
    can see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def deadline_factory(clock):
    def make(budget_s: float = 50.0) -> Deadline:
        return Deadline(budget_s, clock=clock)
    return make


@pytest.fixture
def provider_config(db_session):
    config = EmailProviderConfig(
        workspace_id="ws_1",
        provider="aurinko",
        account_id="acct_1",
        email_address="owner@bizzy.example",
        aliases=["hello@bizzy.example"],
        access_token="tok_123",
        import_mode="last_100",
    )
    db_session.add(config)
    db_session.commit()
    return config


@pytest.fixture
def client(db_urls, db_engine, session_factory, dispatcher, monkeypatch):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    def override_get_sync_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    # background tasks and the SSE stream open their own sessions
    monkeypatch.setattr("bizzybee.routers.webhook.SessionLocal", session_factory)
    monkeypatch.setattr("bizzybee.routers.pipeline.SessionLocal", session_factory)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_db] = override_get_sync_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
