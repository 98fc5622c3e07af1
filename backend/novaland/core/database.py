"""
Database utilities and connection management.

WHAT: SQLAlchemy engine, session factory and declarative base
WHY: Persist threads, messages and the user directory
HOW: SQLAlchemy sync engine v2, WAL mode on SQLite, session context manager
"""

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from contextlib import contextmanager
from pathlib import Path

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Base for models
Base = declarative_base()


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections get WAL mode and foreign keys enabled on connect, and
    every transaction starts with BEGIN IMMEDIATE so concurrent writers queue
    on the busy timeout instead of failing on a stale snapshot.
    """
    if url.startswith("sqlite:///") and ":memory:" not in url:
        data_dir = Path(url.replace("sqlite:///", "")).parent
        data_dir.mkdir(parents=True, exist_ok=True)

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    new_engine = create_engine(url, connect_args=connect_args, echo=echo, future=True)

    if url.startswith("sqlite"):
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable WAL mode and FK constraints."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Transactions are begun below, not by the driver
            dbapi_conn.isolation_level = None

        @event.listens_for(new_engine, "begin")
        def begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory with the settings every store session uses."""
    return sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
SessionLocal = build_session_factory(engine)


@contextmanager
def get_db(session_factory: sessionmaker = SessionLocal):
    """
    Context manager for database session.

    Usage:
        with get_db() as db:
            # use db session
            pass

    Yields:
        Session: SQLAlchemy session (committed on success, rolled back on error)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping_database(bind: Engine = engine) -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    try:
        with bind.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {
            "available": True,
            "url": bind.url.render_as_string(hide_password=True),
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": bind.url.render_as_string(hide_password=True),
            "error": str(e)
        }


def init_db(bind: Engine = engine):
    """Create all tables."""
    # Models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    logger.info("Database initialized")


def close_db(bind: Engine = engine):
    """Close database connections."""
    bind.dispose()
    logger.info("Database connections closed")
