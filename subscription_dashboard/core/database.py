"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL), single-file SQLite for dev/tests
- Table definitions for users, plans, subscriptions and payment events
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Numeric, Text, Index, ForeignKey, text, true
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from subscription_dashboard.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

DEFAULT_SQLITE_URL = "sqlite:///./subscription_dashboard.db"

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available. Falls back to a local
    SQLite file so the app boots without any configuration.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL or DEFAULT_SQLITE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        # Request handlers run in a threadpool; share the connection across threads
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **kwargs)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
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
    """Dispose the current engine (tests switch databases between cases)."""
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

    Everything executed inside the block is one transaction: it is committed
    on normal exit and rolled back if the block raises.

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


# Users (referenced, not owned: identity comes from the credential service)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(255), nullable=True),
    Column('role', String(20), nullable=False, server_default='user'),  # 'user' | 'admin'
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Plan catalog
plans = Table(
    'plans',
    metadata,
    Column('id', String(50), primary_key=True),
    Column('name', String(200), nullable=False, unique=True),
    Column('price', Numeric(10, 2), nullable=False),
    Column('duration_days', Integer, nullable=False),
    Column('features', JSON, nullable=False),
    Column('price_id', String(100), nullable=True),  # external (Stripe) price reference
    Column('slug', String(100), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_plans_price_id', 'price_id'),
    Index('idx_plans_slug', 'slug'),
    Index('idx_plans_active_price', 'is_active', 'price'),
)

# Subscriptions (never hard-deleted; audit trail)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.id'), nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),  # active, expired, cancelled
    Column('payment_id', String(255), nullable=True),
    Column('amount', Numeric(12, 3), nullable=True),
    Column('source', String(20), nullable=False, server_default='manual'),  # manual, webhook, upgrade
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # At most one active row per user; a second concurrent insert fails here
    Index(
        'uq_subscriptions_user_active',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_subscriptions_end_date', 'end_date'),
    Index('idx_subscriptions_status_created', 'status', 'created_at'),
)

# Payment events (webhook idempotency + delivery audit)
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('user_id', String(100), nullable=True, index=True),
    Column('plan_id', String(50), nullable=True),
    Column('outcome', String(30), nullable=True, index=True),
    Column('subscription_id', String(36), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('claimed_at', DateTime(timezone=True), nullable=True),  # lease start of the current processing attempt
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_payment_events_received_at', 'received_at'),
)
