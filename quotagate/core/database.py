"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the entitlement engine
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from quotagate.core.config import settings


logger = logging.getLogger("quotagate.database")

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


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQLite serializes writers; the busy timeout lets concurrent writers queue
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    kwargs = {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        kwargs["connect_args"] = {"options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}"}
    return kwargs


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

    _engine = create_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        **_engine_kwargs(url),
    )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the engine and forget it (tests switch databases between cases)."""
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

    Everything executed inside the block commits together or not at all.

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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


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
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# User profiles; carries the denormalized plan summary read by UI consumers
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('username', String(100), nullable=True),
    Column('role', String(20), nullable=False, server_default='user'),  # user | moderator | admin
    Column('status', String(50), nullable=False, server_default='active'),
    Column('plan', String(20), nullable=False, server_default='free'),
    Column('plan_status', String(20), nullable=False, server_default='active'),
    Column('plan_source', String(20), nullable=True),
    Column('plan_expires_at', DateTime(timezone=True), nullable=True),
    Column('plan_updated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Plan store: one row per user, never deleted
user_plans = Table(
    'user_plans',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('tier', String(20), nullable=False),  # free | supporter | pro
    Column('status', String(20), nullable=False),  # active | revoked | expired
    Column('source', String(20), nullable=False),  # admin_grant | donation | promo | migration
    Column('expires_at', DateTime(timezone=True), nullable=True),  # NULL = lifetime
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('updated_by', String(100), nullable=False),
    Column('reason', Text, nullable=False, server_default=''),
    Column('ai_banned', Boolean, nullable=False, server_default='false'),
    Column('bonus_tokens', Integer, nullable=False, server_default='0'),
    Column('quota_override', Integer, nullable=True),  # NULL = tier default
    # Reconciler sweep: active plans ordered by expiry
    Index('idx_user_plans_status_expires', 'status', 'expires_at'),
)

# History ledger: append-only, one row per plan transition
plan_history = Table(
    'plan_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('user_plans.user_id'), nullable=False),
    Column('old_tier', String(20), nullable=False),
    Column('new_tier', String(20), nullable=False),
    Column('old_status', String(20), nullable=False),
    Column('new_status', String(20), nullable=False),
    Column('actor_id', String(100), nullable=False),
    Column('actor_name', String(200), nullable=False),
    Column('source', String(20), nullable=False),
    Column('reason', Text, nullable=False, server_default=''),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_plan_history_user_created', 'user_id', 'created_at'),
)

# Kill switch registry: single well-known row (id='global')
kill_switches = Table(
    'kill_switches',
    metadata,
    Column('id', String(20), primary_key=True),
    Column('ai_enabled', Boolean, nullable=False),
    Column('paid_features_enabled', Boolean, nullable=False),
    Column('monetization_visible', Boolean, nullable=False),
    Column('quota_free', Integer, nullable=False),
    Column('quota_supporter', Integer, nullable=False),
    Column('quota_pro', Integer, nullable=False),
    Column('version', Integer, nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('updated_by', String(100), nullable=False),
)

# Quota ledger: one row per user per reference day
ai_usage_daily = Table(
    'ai_usage_daily',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('date_key', String(8), primary_key=True),  # YYYYMMDD in QUOTA_TIMEZONE
    Column('count', Integer, nullable=False),
    Column('limit', Integer, nullable=False),  # effective quota snapshotted at first use
    Column('tier_at_time', String(20), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_ai_usage_daily_date', 'date_key'),
)

# Per-decision usage log (anti-abuse analytics), written in the background
ai_usage_events = Table(
    'ai_usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('action', String(50), nullable=False),
    Column('tier_at_time', String(20), nullable=False),
    Column('prompt_chars', Integer, nullable=True),
    Column('outcome', String(10), nullable=False),  # allow | deny
    Column('reason', String(50), nullable=True),
    Column('remaining', Integer, nullable=False),
    Column('date_key', String(8), nullable=False),
    Column('latency_ms', Integer, nullable=False),
    Column('request_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_ai_usage_events_user_created', 'user_id', 'created_at'),
    Index('idx_ai_usage_events_outcome', 'outcome', 'reason'),
)

# Audit trail for administrative actions
audit_log = Table(
    'audit_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(100), nullable=False),  # "monetization.plan_set", ...
    Column('category', String(50), nullable=False),
    Column('actor_id', String(100), nullable=False),
    Column('actor_name', String(200), nullable=False),
    Column('actor_role', String(20), nullable=False),
    Column('target_type', String(50), nullable=True),
    Column('target_id', String(200), nullable=True),
    Column('details', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_audit_log_action', 'action'),
    Index('idx_audit_log_target', 'target_type', 'target_id'),
    Index('idx_audit_log_created_at', 'created_at'),
)

# Donation requests, reviewed manually by an admin
donation_requests = Table(
    'donation_requests',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('requested_tier', String(20), nullable=False),  # supporter | pro
    Column('status', String(20), nullable=False, server_default='pending'),  # pending | approved | rejected
    Column('note', Text, nullable=False, server_default=''),
    Column('admin_feedback', Text, nullable=True),
    Column('reviewed_by', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_donation_requests_user', 'user_id', 'created_at'),
    Index('idx_donation_requests_status', 'status'),
)

# Scheduled job runs
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success | partial | failed
    Column('stats', JSON, nullable=True),
    Index('idx_job_runs_name_started', 'job_name', 'started_at'),
)
