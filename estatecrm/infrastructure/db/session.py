"""
Database session management (SQLAlchemy)

The engine and session factory are built lazily on first use and shared by
the API, the escalation workers and the scheduled jobs.
"""
import threading

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

from estatecrm.config import get_settings


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base for all ORM models
    """
    pass


# Singleton engine and session factory
_engine: Engine | None = None
_SessionLocal = None
_init_lock = threading.Lock()


def build_engine(url: str) -> Engine:
    """Engine for a SQLAlchemy URL; SQLite connections may be used from worker threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def get_engine() -> Engine:
    """Get or create SQLAlchemy engine (singleton)"""
    global _engine
    with _init_lock:
        if _engine is None:
            _engine = build_engine(get_settings().get_sqlalchemy_url())
        return _engine


def get_session_factory():
    """Get or create session factory (singleton)"""
    global _SessionLocal
    engine = get_engine()
    with _init_lock:
        if _SessionLocal is None:
            _SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
        return _SessionLocal


def get_db() -> Session:
    """
    FastAPI dependency: opens a session and always closes it

    Usage:
        @app.get("/appointments")
        def list_appointments(db: Session = Depends(get_db)):
            ...
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_connection() -> None:
    """
    Readiness check: SELECT 1 through the application engine

    Raises:
        sqlalchemy.exc.SQLAlchemyError: when the database is unreachable
    """
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))
