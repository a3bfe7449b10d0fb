"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./clinicflow.db"

# Base class for all database models
Base = declarative_base()

engine: Optional[Engine] = None
SessionLocal = sessionmaker(autoflush=False)


def _create_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    if connect_args is None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # a single shared connection keeps the in-memory database alive
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args, pool_pre_ping=True)


def configure_database(database_url: Optional[str] = None,
                       echo: bool = False,
                       connect_args: Optional[dict] = None) -> Engine:
    """(Re)bind the module-level engine and session factory."""
    global engine
    if database_url is None:
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    if engine is not None:
        engine.dispose()

    engine = _create_engine(database_url, echo=echo, connect_args=connect_args)
    SessionLocal.configure(bind=engine)
    return engine


def get_database_engine() -> Engine:
    """Get the configured engine, creating a default one on first use."""
    if engine is None:
        configure_database()
    return engine


def reset_database_engine():
    """Dispose of the engine (mainly for testing)."""
    global engine
    if engine is not None:
        engine.dispose()
    engine = None


def get_db():
    """Dependency to get database session."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=get_database_engine())
