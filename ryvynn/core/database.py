"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for every persisted entity
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import false, func, true
import logging
import os

from ryvynn.core.config import settings


logger = logging.getLogger("ryvynn")

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


def build_engine(url: str):
    """Create an engine for ``url``.

    SQLite (tests, local dev) gets a single shared connection so an
    in-memory database survives across sessions; everything else gets a
    bounded QueuePool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


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

    _engine = build_engine(url)
    _SessionLocal = build_session_factory(_engine)

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
def session_scope(session_factory: sessionmaker):
    """
    Transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)

    Commits on success, rolls back on any exception, always closes.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_or_scope(session_factory: sessionmaker, session: Optional[Session] = None):
    """Join the caller's session when given, otherwise open a fresh scope."""
    if session is not None:
        yield session
        return
    with session_scope(session_factory) as scoped:
        yield scoped


def insert_if_absent(session: Session, table: Table, values: dict) -> None:
    """INSERT that silently skips rows colliding with a unique constraint.

    PostgreSQL and SQLite use ON CONFLICT DO NOTHING; other dialects fall
    back to a savepoint around a plain INSERT.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        session.execute(postgresql.insert(table).values(**values).on_conflict_do_nothing())
        return
    if dialect == "sqlite":
        session.execute(sqlite.insert(table).values(**values).on_conflict_do_nothing())
        return
    try:
        with session.begin_nested():
            session.execute(table.insert().values(**values))
    except IntegrityError:
        # Row already present
        pass


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine=None):
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine or get_engine())


# Profiles: one row per authenticated user, carries avatar settings
profiles = Table(
    'profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('gender_persona', String(20), nullable=False, server_default='nonbinary'),
    Column('age_tier', String(20), nullable=False, server_default='adult'),
    Column('avatar_name', String(100), nullable=False, server_default='Flame'),
    # Personality sliders (1-10), only honoured for entitled tiers
    Column('personality_warmth', Integer, nullable=True),
    Column('personality_directness', Integer, nullable=True),
    Column('personality_humor', Integer, nullable=True),
    Column('personality_formality', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_profiles_stripe_customer', 'stripe_customer_id'),
)

# Entitlements: materialized limits/features per user (1:1 with profiles)
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(100), ForeignKey('profiles.user_id'), primary_key=True),
    Column('current_tier', Integer, nullable=False, server_default='0'),
    Column('tier_version', String(50), nullable=False),
    Column('grandfathered', Boolean, nullable=False, server_default=false()),
    # -1 encodes unlimited (see features.entitlements.matrix)
    Column('flame_conversations_per_day', Integer, nullable=False),
    Column('truth_posts_per_day', Integer, nullable=False),
    Column('truth_reads_per_day', Integer, nullable=False),
    Column('api_calls_per_day', Integer, nullable=False),
    Column('journal_retention_days', Integer, nullable=False),
    Column('features', JSON, nullable=False),
    Column('subscription_id', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_entitlements_tier_version', 'tier_version'),
)

# Daily usage counters (one row per user, UTC day and counter kind)
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('day', Date, nullable=False),
    Column('kind', String(50), nullable=False),
    Column('value', Integer, nullable=False, server_default='0'),
    UniqueConstraint('user_id', 'day', 'kind', name='uq_usage_counters_user_day_kind'),
    Index('idx_usage_counters_user_day', 'user_id', 'day'),
)

# Subscriptions mirror the billing provider's subscription object
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('profiles.user_id'), nullable=False, index=True),
    Column('provider_subscription_id', String(100), nullable=False, unique=True),
    Column('provider_customer_id', String(100), nullable=True, index=True),
    Column('status', String(50), nullable=False, index=True),  # active, trialing, past_due, canceled, incomplete, unpaid
    Column('price_id', String(100), nullable=True),
    Column('tier_id', Integer, nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_provider_id', 'provider_subscription_id'),
)

# Processed webhook events (idempotency ledger, append-only)
processed_events = Table(
    'processed_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('outcome', String(50), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('provider_event_id', name='uq_processed_events_provider_id'),
)

# Dead letters for billing events that could not be applied
reconciliation_queue = Table(
    'reconciliation_queue',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('reason', String(50), nullable=False),  # unknown_price, unresolvable_user
    Column('detail', Text, nullable=True),
    Column('payload', JSON, nullable=True),
    Column('status', String(20), nullable=False, server_default='open'),  # open, resolved
    Column('attempts', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('provider_event_id', name='uq_reconciliation_queue_event'),
    Index('idx_reconciliation_queue_status', 'status'),
)

# Invoice outcomes (accounting trail only)
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_invoice_id', String(100), nullable=True),
    Column('provider_subscription_id', String(100), nullable=True, index=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('amount_cents', Integer, nullable=True),
    Column('currency', String(10), nullable=True),
    Column('status', String(20), nullable=False),  # succeeded, failed
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Application event log (no user content)
app_events = Table(
    'app_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=True, index=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

# Anonymous truth posts (author never exposed to readers)
truth_posts = Table(
    'truth_posts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('profiles.user_id'), nullable=False, index=True),
    Column('content', Text, nullable=False),
    Column('emotion_tag', String(10), nullable=False),  # light, shadow
    Column('contains_crisis_keywords', Boolean, nullable=False, server_default=false()),
    Column('crisis_level', String(10), nullable=True),
    Column('is_visible', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_truth_posts_feed', 'is_visible', 'emotion_tag', 'created_at'),
)

# One read per (user, post): the read-once reward boundary
truth_reads = Table(
    'truth_reads',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('post_id', Integer, ForeignKey('truth_posts.id'), nullable=False),
    Column('read_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'post_id', name='uq_truth_reads_user_post'),
    Index('idx_truth_reads_user', 'user_id'),
)

# Soul token balances (denormalized from the ledger)
soul_token_balances = Table(
    'soul_token_balances',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('total_earned', Integer, nullable=False, server_default='0'),
    Column('current_balance', Integer, nullable=False, server_default='0'),
    Column('earned_from_truth_reading', Integer, nullable=False, server_default='0'),
    Column('earned_from_truth_sharing', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Soul token ledger (append-only)
soul_token_ledger = Table(
    'soul_token_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('source', String(50), nullable=False),  # truth_reading, truth_sharing
    Column('amount', Integer, nullable=False),
    Column('balance_after', Integer, nullable=False),
    Column('reference', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_soul_token_ledger_user_created', 'user_id', 'created_at'),
)

# Journal entries: ciphertext only, encrypted client-side
journal_entries = Table(
    'journal_entries',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('profiles.user_id'), nullable=False, index=True),
    Column('ciphertext', Text, nullable=False),
    Column('iv', String(64), nullable=False),
    Column('algo_version', String(30), nullable=False),
    Column('tags', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_journal_entries_user_created', 'user_id', 'created_at'),
)
