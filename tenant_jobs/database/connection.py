"""
Database connection management for Tenant Jobs.

Provides a lazily created SQLAlchemy engine and session factory, and
session scopes that commit on success and roll back on error.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from tenant_jobs.config import get_config, TenantJobsConfig

logger = logging.getLogger(__name__)

# Global engine and session factory (lazy-loaded)
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

# Seconds SQLite waits on a locked database before raising
SQLITE_BUSY_TIMEOUT = 30


def get_db_path(config: Optional[TenantJobsConfig] = None) -> Optional[Path]:
    """
    Get the database file path for SQLite URLs.

    Args:
        config: Configuration (uses global if not provided)

    Returns:
        Path to the SQLite database file, or None for other backends
        and in-memory databases
    """
    if config is None:
        config = get_config()

    db_url = config.database_url
    if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
        return Path(db_url[10:])
    return None


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a configured SQLAlchemy engine.

    SQLite engines allow cross-thread use (workers report progress from
    handler threads), wait on locks instead of failing immediately and
    enforce foreign keys so definition deletes cascade.

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Configured SQLAlchemy engine
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT,
            },
            echo=echo,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable SQLite foreign key support."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(
            database_url,
            pool_pre_ping=True,  # Verify connections before use
            pool_recycle=3600,
            echo=echo,
        )

    return engine


def create_session_maker(engine: Engine) -> sessionmaker:
    """
    Build a session factory bound to ``engine``.

    Objects stay readable after commit so that jobs and definitions can
    be handed back to callers once their session scope has closed.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_engine(config: Optional[TenantJobsConfig] = None) -> Engine:
    """
    Initialize the global SQLAlchemy engine.

    Args:
        config: Configuration (uses global if not provided)

    Returns:
        Configured SQLAlchemy engine
    """
    global _engine

    if _engine is not None:
        return _engine

    if config is None:
        config = get_config()

    db_path = get_db_path(config)
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    _engine = create_db_engine(config.database_url)

    logger.debug(f"Database engine initialized: {config.database_url}")
    return _engine


def get_session_maker(config: Optional[TenantJobsConfig] = None) -> sessionmaker:
    """
    Get or create the global session maker.

    Args:
        config: Configuration (uses global if not provided)

    Returns:
        Configured session maker
    """
    global _SessionLocal

    if _SessionLocal is not None:
        return _SessionLocal

    _SessionLocal = create_session_maker(init_engine(config))
    return _SessionLocal


def dispose_engine() -> None:
    """Dispose the global engine and forget the session maker."""
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()
        logger.debug("Database engine disposed")
    _engine = None
    _SessionLocal = None


@contextmanager
def session_scope(session_maker: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations.

    Commits when the block exits normally, rolls back and re-raises
    on error, and always closes the session.
    """
    session = session_maker()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_db_session(config: Optional[TenantJobsConfig] = None) -> Generator[Session, None, None]:
    """
    Get a database session context manager on the global engine.

    Usage:
        with get_db_session() as session:
            job = session.get(Job, job_id)

    Args:
        config: Configuration (uses global if not provided)

    Yields:
        SQLAlchemy Session
    """
    with session_scope(get_session_maker(config)) as session:
        yield session


def create_tables(config: Optional[TenantJobsConfig] = None, engine: Optional[Engine] = None) -> None:
    """
    Create all database tables.

    Args:
        config: Configuration (uses global if not provided)
        engine: Explicit engine (defaults to the global one)
    """
    from tenant_jobs.database.models import Base

    engine = engine or init_engine(config)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables(config: Optional[TenantJobsConfig] = None, engine: Optional[Engine] = None) -> None:
    """
    Drop all database tables.

    WARNING: This will delete all data!
    """
    from tenant_jobs.database.models import Base

    engine = engine or init_engine(config)
    Base.metadata.drop_all(bind=engine)
    logger.warning("Database tables dropped")


def reset_database(config: Optional[TenantJobsConfig] = None, engine: Optional[Engine] = None) -> None:
    """
    Reset database by dropping and recreating all tables.

    WARNING: This will delete all data!
    """
    drop_tables(config, engine)
    create_tables(config, engine)
    logger.warning("Database reset complete")
