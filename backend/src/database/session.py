"""
Engine and session management.

The engine is created once by the app factory (or a job entry point) and the
resulting sessionmaker is handed to request dependencies. No module-level
engine exists, so importing this module has no side effects.
"""

import logging
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from src.db_base import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, **kwargs) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite URLs (tests, local dev) get check_same_thread disabled so the
    TestClient's worker thread can use the connection.
    """
    if database_url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        return create_engine(database_url, connect_args=connect_args, **kwargs)
    return create_engine(database_url, pool_pre_ping=True, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet."""
    import src.models  # noqa: F401  (registers models on Base.metadata)

    Base.metadata.create_all(engine)
    logger.info("Database schema ensured", extra={"dialect": engine.dialect.name})


def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Yield a session and always close it."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
