"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite files work for local runs)
- Table definitions for the entitlement store and usage ledger
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
    DateTime,
    Boolean,
    Text,
    Index,
    ForeignKey,
    CheckConstraint,
    text,
    true,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from marketplace.core.config import settings
from marketplace.core.errors import InfraUnavailableError

logger = logging.getLogger("marketplace.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        }
        if ":memory:" in url or url.rstrip("/") in {"sqlite:", "sqlite+pysqlite:"}:
            options["poolclass"] = StaticPool
        return options
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
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

    _engine = create_engine(url, echo=False, **_engine_options(url))

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
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

    Commits on clean exit, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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
def db_errors(operation: str):
    """
    Translate persistence failures into InfraUnavailableError (fail closed).

    IntegrityError passes through untouched: constraint violations are
    business outcomes the caller classifies itself.
    """
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.error(
            "[database] operation failed",
            extra={"error_code": "infra_unavailable", "operation": operation},
        )
        raise InfraUnavailableError(f"Persistence unavailable during {operation}") from exc


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
    except (SQLAlchemyError, ValueError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Entitlements: one user's purchased access grant to one service.
# quota_used is the authoritative consumption counter; every mutation of a
# row goes through a single conditional UPDATE.
entitlements = Table(
    'entitlements',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('service_id', Integer, nullable=False),
    Column('payment_id', String(200), nullable=False, unique=True),
    Column('pricing_tier', String(50), nullable=False),
    Column('quota_limit', Integer, nullable=False),
    Column('quota_used', Integer, nullable=False, server_default='0'),
    Column('valid_from', DateTime(timezone=True), nullable=False),
    Column('valid_until', DateTime(timezone=True), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('token_type', String(20), nullable=False),
    Column('amount_paid', String(100), nullable=False),
    Column('tx_digest', String(200), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('quota_limit >= 0', name='ck_entitlements_quota_limit_nonneg'),
    CheckConstraint('quota_used >= 0', name='ck_entitlements_quota_used_nonneg'),
    # Composite index for the verifier lookup: (user_id, service_id, is_active)
    Index('idx_entitlements_user_service_active', 'user_id', 'service_id', 'is_active'),
    Index('idx_entitlements_service', 'service_id'),
)

# Usage ledger (append-only)
usage_logs = Table(
    'usage_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('entitlement_id', Integer, ForeignKey('entitlements.id'), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('service_id', Integer, nullable=False),
    Column('timestamp', DateTime(timezone=True), nullable=False),
    Column('requests_count', Integer, nullable=False, server_default='1'),
    Column('endpoint', Text, nullable=False),
    Column('ip_address', String(100), nullable=True),
    Column('user_agent', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('requests_count >= 1', name='ck_usage_logs_requests_count_pos'),
    Index('idx_usage_logs_entitlement', 'entitlement_id'),
    # Composite index for stats queries: (user_id, timestamp)
    Index('idx_usage_logs_user_timestamp', 'user_id', 'timestamp'),
    Index('idx_usage_logs_service_timestamp', 'service_id', 'timestamp'),
)

# Quota adjustment audit trail (admin / provider)
quota_adjustments = Table(
    'quota_adjustments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('entitlement_id', Integer, ForeignKey('entitlements.id'), nullable=False),
    Column('previous_limit', Integer, nullable=False),
    Column('new_limit', Integer, nullable=False),
    Column('adjustment', Integer, nullable=False),
    Column('reason', Text, nullable=False),
    Column('actor_id', String(100), nullable=False),
    Column('actor_role', String(20), nullable=False),  # 'admin', 'provider'
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_quota_adjustments_entitlement', 'entitlement_id', 'created_at'),
)
