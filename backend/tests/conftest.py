"""Pytest fixtures: in-memory DB, store, client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RUN_GUARD_BACKEND", "local")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mailsync.database import get_db
from mailsync.main import app
from mailsync.models import Base
from mailsync.run_guard import LocalRunGuard
from mailsync.scheduler import SyncScheduler, get_scheduler
from mailsync.services.store import SqlApplicationStore


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
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
def store(db_session):
    return SqlApplicationStore(db_session)


@pytest.fixture
def scheduler(session_factory):
    """Scheduler whose runs are supplied by each test via scheduler._run_fn."""
    return SyncScheduler(run_fn=lambda trigger: None, guard=LocalRunGuard(), session_factory=session_factory)


@pytest.fixture
def client(session_factory, scheduler):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
