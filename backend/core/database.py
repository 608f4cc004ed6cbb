"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine management
- Connection pooling with sane defaults (server databases only)
- Table definitions for usage counters and code analyses
"""
from typing import Optional
import logging
import os

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import func

from backend.core.config import settings
from backend.core.logging import LOGGER_NAME


logger = logging.getLogger(LOGGER_NAME)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

# Global engine (owned by the app lifespan)
_engine: Optional[Engine] = None


usage_counters = Table(
    "usage_counters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False),
    Column("period_key", String(16), nullable=False),
    Column("count", Integer, nullable=False, server_default=text("0")),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "period_key", name="uq_usage_counters_user_period"),
)

code_analyses = Table(
    "code_analyses",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(128), nullable=False),
    Column("code", Text, nullable=False),
    Column("code_hash", String(64), nullable=False),
    Column("language", String(64), nullable=False),
    Column("file_name", String(512), nullable=True),
    Column("file_path", String(2048), nullable=True),
    Column("is_claude_generated", Boolean, nullable=False, server_default=text("false")),
    Column("detection_method", String(32), nullable=False, server_default="manual"),
    Column("detected_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_code_analyses_user_hash", "user_id", "code_hash", "language"),
    Index("ix_code_analyses_user_created", "user_id", "created_at"),
)

explanations = Table(
    "explanations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "code_analysis_id",
        String(36),
        ForeignKey("code_analyses.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("level", String(16), nullable=False),
    Column("content", Text, nullable=False),
    Column("summary", Text, nullable=True),
    Column("key_concepts", JSON, nullable=True),
    Column("complexity_score", Integer, nullable=True),
    Column("ai_model", String(128), nullable=False),
    Column("generation_time_ms", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("code_analysis_id", "level", name="uq_explanations_analysis_level"),
)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the database dialect."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Initialize the process-wide SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _engine = build_engine(url)
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the global engine."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
