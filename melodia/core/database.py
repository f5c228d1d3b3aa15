"""
Engine, sessions and table definitions.

One pooled engine per process. Services open short units of work with
get_db_session(); code that must join a caller's transaction (the status
write and the premium grant) goes through session_scope().
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, CheckConstraint, false, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from melodia.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # seconds

_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL from the process env wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    options = {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
    }
    if url.startswith("sqlite"):
        # Pooled connections are handed between request threads
        options["connect_args"] = {"check_same_thread": False, "timeout": POOL_TIMEOUT}
    return options


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the engine and session factory; database_url overrides the configured one."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured (env or .env)")

    _engine = create_engine(url, **_engine_options(url))
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    logger.info("[db] engine ready", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    One unit of work.

        with get_db_session() as session:
            session.execute(...)

    Commits when the block exits normally; any exception rolls back and
    propagates.
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Join a caller's session, or open (and own) a fresh one.

    A joined session is never committed here; the owner decides.
    """
    if session is not None:
        yield session
        return
    with get_db_session() as owned:
        yield owned


def create_all_tables() -> None:
    """Idempotent bootstrap (existing tables are left alone)."""
    metadata.create_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("[db] connection check failed: %s", e)
        return False
    return True


# Users (entitlement fields live here; profile CRUD belongs to the auth service)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('username', String(255), nullable=True, unique=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('is_premium', Boolean, nullable=False, default=False, server_default=false()),
    Column('premium_expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Payment ledger: one row per purchase attempt, never deleted
payment_transactions = Table(
    'payment_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('order_id', String(64), nullable=False, unique=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('amount', Integer, nullable=False),  # minor units, copied from the plan at creation
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('payment_type', String(100), nullable=True),
    Column('gateway_token', String(255), nullable=True),
    Column('gateway_redirect_url', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint(
        "status IN ('pending', 'success', 'challenge', 'failed')",
        name='ck_payment_transactions_status',
    ),
    # Ledger listing: newest first per user
    Index('idx_payment_transactions_user_created', 'user_id', 'created_at'),
)
