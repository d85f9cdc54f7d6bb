"""
Tests for the lazily built engine and session factory.

Covers:
  - SQLite URLs work for the readiness check
  - Concurrent first use builds exactly one engine and one factory
  - An unreachable database surfaces as SQLAlchemyError
"""
import threading
import time

import pytest
from sqlalchemy.exc import SQLAlchemyError

from estatecrm.config import Settings
from estatecrm.infrastructure.db import session as session_module


@pytest.fixture
def fresh_session_module(monkeypatch, tmp_path):
    """Point the module at a file-backed SQLite database with no engine built yet."""
    settings = Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'ready.db'}")
    monkeypatch.setattr(session_module, "get_settings", lambda: settings)
    monkeypatch.setattr(session_module, "_engine", None)
    monkeypatch.setattr(session_module, "_SessionLocal", None)
    yield session_module
    if session_module._engine is not None:
        session_module._engine.dispose()


def test_check_db_connection_on_sqlite(fresh_session_module):
    fresh_session_module.check_db_connection()
    assert str(fresh_session_module.get_engine().url).startswith("sqlite")


def test_concurrent_first_use_builds_one_engine(fresh_session_module, monkeypatch):
    real_build = session_module.build_engine
    built = []

    def slow_build(url):
        time.sleep(0.05)
        engine = real_build(url)
        built.append(engine)
        return engine

    monkeypatch.setattr(session_module, "build_engine", slow_build)
    barrier = threading.Barrier(8)
    factories = []

    def worker():
        barrier.wait()
        factories.append(fresh_session_module.get_session_factory())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(built) == 1
    assert len(factories) == 8
    assert all(f is factories[0] for f in factories)


def test_unreachable_database(monkeypatch, tmp_path):
    engine = session_module.build_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    monkeypatch.setattr(session_module, "_engine", engine)
    with pytest.raises(SQLAlchemyError):
        session_module.check_db_connection()
    engine.dispose()
