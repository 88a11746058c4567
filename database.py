"""
Database Configuration and Session Management
============================================

Engine and session factories for the gift escrow core. Nothing here is created at
import time: the application builds one engine from its Config and hands the session
factory to each service explicitly.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base
from utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def server_connect_args(url: str) -> Dict[str, Any]:
    """Connection options for a server database"""
    connect_args: Dict[str, Any] = {"connect_timeout": 10}
    if url.startswith("postgresql"):
        connect_args["application_name"] = "gift_escrow_core"
        # Timestamps are written as naive UTC; the session must read them back as UTC
        connect_args["options"] = "-c timezone=UTC"
    return connect_args


def build_engine(config: Config) -> Engine:
    """Create the sync engine for the configured database"""
    url = config.DATABASE_URL
    if not url:
        raise ConfigurationError("DATABASE_URL environment variable is required")

    if url.startswith("sqlite"):
        # In-memory sqlite must share one connection across sessions
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        engine = create_engine(
            url,
            pool_size=5,           # Base pool for API workers plus scheduler
            max_overflow=10,       # Burst capacity during sweeps
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=False,
            connect_args=server_connect_args(url),
        )
    logger.info(f"✅ DATABASE_ENGINE_READY: dialect={engine.dialect.name}")
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory shared by every service of one process"""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def managed_session(session_factory: sessionmaker) -> Iterator[Session]:
    """Commit on success, roll back on error, always close"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        logger.error(f"❌ DATABASE_SESSION_ERROR: rolling back: {e}")
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """Create all tables that do not exist yet"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✅ Database tables created successfully")
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}")
        raise
