"""
Database engine and session factory built from the central configuration.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import DatabaseConfig, get_settings
from .logging import get_logger
from .models import Base

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_database_engine(config: DatabaseConfig | None = None, url: str | None = None) -> Engine:
    """
    Create SQLAlchemy engine from configuration, or from an explicit URL.

    Example:
        >>> engine = create_database_engine(url="sqlite:///:memory:")
    """
    if url is not None:
        connection_url = url
        engine_options = {"future": True}
    else:
        config = config or get_settings().database
        connection_url = config.get_connection_url()
        engine_options = config.get_engine_options()

    backend = connection_url.split(":", 1)[0]
    logger.info(f"Creating database engine for {backend} backend")
    logger.debug(f"Connection URL: {connection_url.split('@')[0]}@***")  # Hide credentials in logs

    try:
        engine = create_engine(connection_url, **engine_options)
    except Exception as e:
        logger.error(f"Failed to create database engine: {str(e)}")
        raise

    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    return engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker:
    """
    Create SQLAlchemy session factory.

    Example:
        >>> SessionLocal = create_session_factory(engine)
        >>> with SessionLocal() as session:
        ...     pass
    """
    if engine is None:
        engine = create_database_engine()

    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


def initialise_database(engine: Engine) -> list[str]:
    """
    Create any missing tables. Existing tables are left untouched.

    Returns:
        Names of the tables that were created
    """
    existing = set(inspect(engine).get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing]
    if missing:
        Base.metadata.create_all(engine, tables=missing)
        logger.info(f"Created tables: {', '.join(t.name for t in missing)}")
    return [t.name for t in missing]


def make_engine_and_session(connection_url: str | None = None) -> tuple[Engine, sessionmaker]:
    """
    Create engine, session factory and schema in one step.

    Example:
        >>> engine, SessionLocal = make_engine_and_session("sqlite:///:memory:")
    """
    engine = create_database_engine(url=connection_url)
    initialise_database(engine)
    return engine, create_session_factory(engine)

