"""
Database configuration and session management
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from membership_fees.core.config import get_settings
from membership_fees.core.logging_config import LoggingConfig

# Lazy initialization - don't create engine at module level
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

# Base class for models (can be created immediately)
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine with the connection options used for the given backend"""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 5})
    else:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("connect_args", {
            "connect_timeout": 5,
            "options": "-c statement_timeout=5000"
        })
    return create_engine(database_url, echo=echo, **kwargs)


def get_engine() -> Engine:
    """Get or create database engine (lazy initialization)"""
    global _engine
    if _engine is None:
        settings = get_settings()
        LoggingConfig.configure()

        options = {}
        if not settings.database_url.startswith("sqlite"):
            options["pool_size"] = settings.database_pool_size
            options["max_overflow"] = settings.database_max_overflow

        _engine = build_engine(settings.database_url, echo=settings.log_sqlalchemy, **options)

        sqlalchemy_logger = logging.getLogger("sqlalchemy.engine")
        if not settings.log_sqlalchemy:
            sqlalchemy_logger.setLevel(logging.WARNING)
            sqlalchemy_logger.propagate = False

    return _engine


def get_session_local() -> sessionmaker:
    """Get or create session factory (lazy initialization)"""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Create every table registered on Base (development and tests; production uses Alembic)"""
    import membership_fees.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
