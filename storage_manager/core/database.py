"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for SQLite)
- Storage table definitions (types, units, members, assignments, violations)
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, Date, DateTime, Boolean, Numeric, Text, Index, ForeignKey
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from storage_manager.core.config import settings


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
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
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


# Storage types (pricing source for units)
storage_types = Table(
    'storage_types',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('label', String(255), nullable=False),
    Column('stripe_price_id', String(100), nullable=False, server_default=''),
    Column('monthly_price', Numeric(10, 2), nullable=True),
)

# Storage units
storage_units = Table(
    'storage_units',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('label', String(100), nullable=False, unique=True),
    Column('type_id', Integer, ForeignKey('storage_types.id'), nullable=True),
    Column('status', String(20), nullable=False, server_default='vacant'),
)

# Members (billing customers live here)
members = Table(
    'members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('display_name', String(255), nullable=False, server_default=''),
    Column('email', String(255), nullable=True),
    Column('stripe_customer_id', String(100), nullable=False, server_default=''),
)

# Storage assignments (billing link fields are owned by the reconciler)
storage_assignments = Table(
    'storage_assignments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('unit_id', Integer, ForeignKey('storage_units.id'), nullable=False),
    Column('member_id', Integer, ForeignKey('members.id'), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('start_date', Date, nullable=False),
    Column('end_date', Date, nullable=True),
    Column('price_snapshot', Numeric(10, 2), nullable=True),
    Column('complimentary', Boolean, nullable=False, server_default='0'),
    Column('stripe_price_id', String(100), nullable=False, server_default=''),
    Column('stripe_subscription_id', String(100), nullable=False, server_default=''),
    Column('stripe_item_id', String(100), nullable=False, server_default=''),
    Column('stripe_status', String(50), nullable=False, server_default=''),
    Column('manual_review', Boolean, nullable=False, server_default='0'),
    Column('manual_review_note', Text, nullable=False, server_default=''),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_storage_assignments_unit_status', 'unit_id', 'status'),
    Index('idx_storage_assignments_member', 'member_id'),
    Index('idx_storage_assignments_subscription', 'stripe_subscription_id'),
)

# Storage violations
storage_violations = Table(
    'storage_violations',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('assignment_id', Integer, ForeignKey('storage_assignments.id'), nullable=False),
    Column('active', Boolean, nullable=False, server_default='1'),
    Column('start', DateTime(timezone=True), nullable=False),
    Column('daily_rate', Numeric(10, 2), nullable=True),
    Column('resolved_at', DateTime(timezone=True), nullable=True),
    Column('total_due', Numeric(10, 2), nullable=True),
    Column('note', Text, nullable=False, server_default=''),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_storage_violations_assignment_active', 'assignment_id', 'active'),
)
