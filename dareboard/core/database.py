"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite shares one connection)
- Table definitions for dares, completions, engagements and sweep runs
"""
import logging
from typing import Optional
from contextlib import contextmanager
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
    CheckConstraint,
    select,
    text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from dareboard.core.config import settings

logger = logging.getLogger("dareboard.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        # and threads (TestClient runs handlers in a worker thread).
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-initialises it."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on clean exit, rolls back on any exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Display identity of users, upserted on authentication
profiles = Table(
    'profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('avatar_url', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Dares: time-bounded public challenges, soft-deleted only
dares = Table(
    'dares',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('title', String(120), nullable=False),
    Column('description', Text, nullable=False),
    Column('hashtag', String(100), nullable=True),
    Column('vibe', String(16), nullable=False),
    Column('expiry_date', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('deactivation_reason', String(32), nullable=True),
    Column('deactivated_at', DateTime(timezone=True), nullable=True),
    Column('completion_count', Integer, nullable=False, default=0),
    Column('smile_count', Integer, nullable=False, default=0),
    Column('comment_count', Integer, nullable=False, default=0),
    Column('share_count', Integer, nullable=False, default=0),
    CheckConstraint('expiry_date > created_at', name='ck_dares_expiry_after_created'),
    # Sweep and expiring-soon scans
    Index('idx_dares_active_expiry', 'is_active', 'expiry_date'),
    # "new" listing
    Index('idx_dares_active_created', 'is_active', 'created_at'),
)

# Completions: one user's proof of having done a dare
completed_dares = Table(
    'completed_dares',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('dare_id', String(36), ForeignKey('dares.id'), nullable=False, index=True),
    Column('completer_id', String(100), nullable=False, index=True),
    Column('media_urls', JSON, nullable=False),
    Column('caption', Text, nullable=True),
    Column('location', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('deactivation_reason', String(32), nullable=True),
    Column('deactivated_at', DateTime(timezone=True), nullable=True),
    Column('smile_count', Integer, nullable=False, default=0),
    Column('comment_count', Integer, nullable=False, default=0),
    Column('share_count', Integer, nullable=False, default=0),
    # One active completion per (dare, completer)
    Index(
        'uq_completed_dares_active_dare_completer',
        'dare_id', 'completer_id',
        unique=True,
        postgresql_where=text('is_active'),
        sqlite_where=text('is_active'),
    ),
    Index('idx_completed_dares_active_created', 'is_active', 'created_at'),
)

_UNIQUE_ENGAGEMENT_TYPES = "engagement_type IN ('smile', 'tag')"

# Engagement ledger: individual reactions, the source of truth for counters
dare_engagements = Table(
    'dare_engagements',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('dare_id', String(36), ForeignKey('dares.id'), nullable=True, index=True),
    Column('completed_dare_id', String(36), ForeignKey('completed_dares.id'), nullable=True, index=True),
    Column('engagement_type', String(16), nullable=False),
    Column('content', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Exactly one target
    CheckConstraint(
        '(dare_id IS NULL) <> (completed_dare_id IS NULL)',
        name='ck_dare_engagements_single_target',
    ),
    CheckConstraint(
        "engagement_type IN ('smile', 'comment', 'share', 'tag')",
        name='ck_dare_engagements_type',
    ),
    # One smile/tag per (user, target); comments and shares may repeat
    Index(
        'uq_dare_engagements_user_dare_type',
        'user_id', 'dare_id', 'engagement_type',
        unique=True,
        postgresql_where=text(f"{_UNIQUE_ENGAGEMENT_TYPES} AND dare_id IS NOT NULL"),
        sqlite_where=text(f"{_UNIQUE_ENGAGEMENT_TYPES} AND dare_id IS NOT NULL"),
    ),
    Index(
        'uq_dare_engagements_user_completed_type',
        'user_id', 'completed_dare_id', 'engagement_type',
        unique=True,
        postgresql_where=text(f"{_UNIQUE_ENGAGEMENT_TYPES} AND completed_dare_id IS NOT NULL"),
        sqlite_where=text(f"{_UNIQUE_ENGAGEMENT_TYPES} AND completed_dare_id IS NOT NULL"),
    ),
    Index('idx_dare_engagements_completed_type_created', 'completed_dare_id', 'engagement_type', 'created_at'),
)

# Sweep job runs (observability only, the sweep itself keeps no state)
dare_sweep_runs = Table(
    'dare_sweep_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('ran_at', DateTime(timezone=True), nullable=False, index=True),
    Column('expired_dares', Integer, nullable=False, server_default='0'),
    Column('low_engagement_dares', Integer, nullable=False, server_default='0'),
    Column('low_smiles_completions', Integer, nullable=False, server_default='0'),
    Column('failures', Integer, nullable=False, server_default='0'),
    Column('duration_ms', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
