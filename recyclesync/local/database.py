"""Database configuration for the local store."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the local cache database.

    In-memory SQLite shares a single connection so every session (and every
    worker thread) sees the same tables.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def init_database(engine: Engine) -> None:
    """Create tables if they don't exist."""
    # Import models so they register with Base.metadata
    from recyclesync.local import tables  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.debug(f"Local database ready: {engine.url}")


def create_session_factory(database_url: str) -> sessionmaker:
    """Create the engine, ensure the schema and return a session factory."""
    engine = create_db_engine(database_url)
    init_database(engine)
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )
