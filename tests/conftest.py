"""
Pytest fixtures for testing
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from estatecrm.application.conflicts import ConflictIndexRegistry
from estatecrm.config import Settings
from estatecrm.infrastructure.db.session import Base
from estatecrm.infrastructure.db.models import User


@pytest.fixture
def db_engine():
    """In-memory SQLite engine; StaticPool so every session sees the same database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    """Create database session for tests"""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settings():
    """Settings independent of the environment (single escalation worker for SQLite)"""
    return Settings(
        DATABASE_URL="sqlite:///:memory:",
        ESCALATION_WORKERS=1,
        DISPATCH_BASE_DELAY=0,
        DISPATCH_MAX_DELAY=0,
        SCHEDULER_ENABLED=False,
    )


@pytest.fixture
def registry():
    return ConflictIndexRegistry(safety_limit=500)


@pytest.fixture
def sample_account_id():
    """Sample agent ID for tests"""
    return 1


@pytest.fixture
def agent(db_session, sample_account_id) -> User:
    user = User(
        id=sample_account_id,
        email="agent@example.com",
        name="Agent",
        phone_number="+15550100",
        timezone="UTC",
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite: one connection per session, as with a real database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'calendar.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()
