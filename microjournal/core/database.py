"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite URLs are accepted for local runs and tests)
- Table definitions for the journal, streak and push registries
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    text,
)
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from microjournal.core.config import settings
from microjournal.core.errors import StorageUnavailable

logger = logging.getLogger("microjournal")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

# SQLSTATE for foreign_key_violation
FOREIGN_KEY_VIOLATION = "23503"

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


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            return {"poolclass": StaticPool, "connect_args": connect_args}
        return {"poolclass": QueuePool, "pool_size": POOL_SIZE, "max_overflow": MAX_OVERFLOW, "connect_args": connect_args}
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
    }


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

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_kwargs(url))

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


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


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
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


@contextmanager
def storage_errors(operation: str):
    """Translate driver-level failures into StorageUnavailable.

    Integrity violations pass through untouched; callers treat them as
    domain signals (duplicate post, lost insert race).
    """
    try:
        yield
    except IntegrityError:
        raise
    except DBAPIError as exc:
        logger.error("storage.unavailable", extra={"operation": operation, "error": str(exc.orig)[:200]})
        raise StorageUnavailable(f"storage unavailable during {operation}") from exc


def violated_unique_constraint(exc: IntegrityError, table: Table) -> Optional[str]:
    """Name of the unique constraint on `table` that `exc` reports, if any.

    Postgres names the constraint; SQLite only lists the columns.
    """
    reported = getattr(getattr(exc.orig, "diag", None), "constraint_name", None)
    message = str(exc.orig)
    for constraint in table.constraints:
        if not isinstance(constraint, UniqueConstraint) or not constraint.name:
            continue
        columns = ", ".join(f"{table.name}.{column.name}" for column in constraint.columns)
        if reported == constraint.name or constraint.name in message or f"UNIQUE constraint failed: {columns}" in message:
            return constraint.name
    return None


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    return getattr(exc.orig, "pgcode", None) == FOREIGN_KEY_VIOLATION or "FOREIGN KEY constraint failed" in str(exc.orig)


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Users (owned by the profile service; read here for timezone and display name)
users = Table(
    'users',
    metadata,
    Column('id', Integer, primary_key=True),
    Column('username', String(100), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('timezone', String(64), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Follow graph (owned by the social service; read here to find streak partners)
followers = Table(
    'followers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('follower_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('following_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('status', String(16), nullable=False, server_default='pending'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('follower_id', 'following_id', name='uq_followers_pair'),
)

# Journal posts: one per (user, journal_date)
activities = Table(
    'activities',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('journal_date', Date, nullable=False),
    Column('text', Text, nullable=False),
    Column('template_id', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'journal_date', name='uniq_user_journal_date'),
    Index('idx_activities_journal_date', 'journal_date'),
)

# Solo streak state; `version` backs the compare-and-swap in StreakTracker
streaks = Table(
    'streaks',
    metadata,
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
    Column('streak_count', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('last_activity_date', Date, nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    CheckConstraint('streak_count >= 0', name='ck_streaks_count_non_negative'),
    CheckConstraint('longest_streak >= streak_count', name='ck_streaks_longest_covers_current'),
    Index('idx_streaks_last_activity', 'last_activity_date'),
)

# Pairwise streaks: only dates are persisted, the count is derived
pair_streaks = Table(
    'pair_streaks',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id_1', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('user_id_2', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('last_contribution_date_user1', Date, nullable=True),
    Column('last_contribution_date_user2', Date, nullable=True),
    Column('streak_started_on', Date, nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('started_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id_1', 'user_id_2', name='uq_pair_streaks_users'),
    CheckConstraint('user_id_1 < user_id_2', name='ck_pair_streaks_canonical_order'),
    Index('idx_pair_streaks_user2', 'user_id_2'),
)

# Push endpoint registry
push_endpoints = Table(
    'push_endpoints',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('token', String(512), nullable=False),
    Column('registered_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'token', name='uq_push_endpoints_user_token'),
    Index('idx_push_endpoints_token', 'token'),
)

# Reminder idempotency markers: one send per (user, kind, journal_date)
reminder_deliveries = Table(
    'reminder_deliveries',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('kind', String(32), nullable=False),
    Column('journal_date', Date, nullable=False),
    Column('sent_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'kind', 'journal_date', name='uq_reminder_deliveries_user_kind_date'),
)
