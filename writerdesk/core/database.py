"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for entitlements, the billing event ledger, user alerts,
  subscription history and payment history
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint, false
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from writerdesk.core.config import settings


logger = logging.getLogger("writerdesk")

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

    connect_args = {}
    if url.startswith("sqlite"):
        # Request handlers run on a threadpool
        connect_args = {"check_same_thread": False, "timeout": 30}

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )

    # Create session factory
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
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Entitlements: one row per user, keyed by the auth provider's user id
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('billing_customer_ref', String(255), nullable=True),
    Column('billing_subscription_ref', String(255), nullable=True),
    Column('billing_price_ref', String(255), nullable=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('tokens_used_this_period', Integer, nullable=False, server_default='0'),
    Column('tokens_limit', Integer, nullable=False),
    # Period start the usage counter was accumulated in; differs from
    # current_period_start after a rollover until the next metering call
    Column('usage_period_start', DateTime(timezone=True), nullable=False),
    Column('past_due_since', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_entitlements_customer_ref', 'billing_customer_ref'),
    Index('idx_entitlements_subscription_ref', 'billing_subscription_ref'),
    Index('idx_entitlements_tier_status', 'tier', 'status'),
)

# Billing events ledger (webhook deliveries)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('user_id', String(128), nullable=True),
    Column('payload_hash', String(64), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Delivery attempts after the first; bumped when a failed or stale row is reclaimed
    Column('retry_count', Integer, nullable=False, server_default='0'),
    Column('last_attempt_at', DateTime(timezone=True), nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)

# User-facing notices raised by billing events (e.g. trial ending soon)
user_alerts = Table(
    'user_alerts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False, index=True),
    Column('kind', String(50), nullable=False),
    Column('message', Text, nullable=False),
    Column('source_event_id', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('read_at', DateTime(timezone=True), nullable=True),
    Index('idx_user_alerts_user_created', 'user_id', 'created_at'),
)

# Audit trail of tier/status transitions; entitlement rows are overwritten in place
subscription_history = Table(
    'subscription_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('from_tier', String(20), nullable=True),
    Column('to_tier', String(20), nullable=False),
    Column('from_status', String(20), nullable=True),
    Column('to_status', String(20), nullable=False),
    Column('billing_subscription_ref', String(255), nullable=True),
    Column('source', String(50), nullable=False),
    Column('source_event_id', String(255), nullable=True),
    Column('changed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_history_user_changed', 'user_id', 'changed_at'),
)

# Invoice payments and failures reported by the provider
payment_history = Table(
    'payment_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('stripe_invoice_id', String(255), nullable=False),
    Column('stripe_payment_intent_id', String(255), nullable=True),
    Column('stripe_subscription_id', String(255), nullable=True),
    Column('amount_cents', Integer, nullable=False, server_default='0'),
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('status', String(20), nullable=False),
    Column('subscription_tier', String(20), nullable=False),
    Column('billing_period', String(10), nullable=True),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('description', Text, nullable=True),
    Column('receipt_url', Text, nullable=True),
    Column('source_event_id', String(255), nullable=True),
    Column('recorded_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('stripe_invoice_id', 'status', name='uq_payment_history_invoice_status'),
    Index('idx_payment_history_user_recorded', 'user_id', 'recorded_at'),
)
