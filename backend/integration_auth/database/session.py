"""
Engine and session factory for credential and audit storage.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from integration_auth.db_base import Base

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    # Render/Heroku style URLs use the legacy scheme
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def build_engine(database_url: str) -> Engine:
    """Create the engine for DATABASE_URL."""
    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    """
    Session factory used by the store and the audit ledger.

    Objects stay readable after commit; each operation opens and closes
    its own session.
    """
    return sessionmaker(
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_db(engine: Engine) -> None:
    """Create the credential and audit tables if they do not exist."""
    # Register both tables on Base.metadata
    import integration_auth.models  # noqa: F401
    import integration_auth.models.audit_log  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Integration tables ready", extra={"dialect": engine.dialect.name})
