"""
Engine, session factory and the per-request session dependency.

One engine per process, created lazily from DATABASE_URL. Routes receive a
request-scoped Session through get_db_session; the reconcile job and the
scripts open their own sessions from get_session_factory().

Usage:
    from gymaccess.database.session import get_db_session

    @router.get("/entitlement/status")
    async def status(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import AsyncGenerator, Callable, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

# Hosted Postgres providers hand out postgres:// URLs; SQLAlchemy needs the driver named
_DRIVER_PREFIXES = (
    ("postgres://", "postgresql+psycopg://"),
    ("postgresql://", "postgresql+psycopg://"),
)


def normalize_database_url(database_url: str) -> str:
    """Route plain PostgreSQL URLs through the psycopg 3 driver."""
    for prefix, replacement in _DRIVER_PREFIXES:
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url


def database_url_from_env() -> str:
    """
    Raises:
        ValueError: DATABASE_URL is not set
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    return normalize_database_url(database_url)


def create_engine_for_url(database_url: str) -> Engine:
    """
    SQLite shares one connection across threads (tests, local runs).
    PostgreSQL gets a small pre-pinged pool; membership reads are short.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(database_url_from_env())
        logger.info("Membership store engine created", extra={
            "dialect": _engine.dialect.name,
        })
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Session factory bound to the process engine.

    expire_on_commit is off: services commit inside a unit of work and
    keep returning the loaded rows to the routes afterwards.
    """
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose of the engine singleton (for tests only)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


async def get_db_session() -> AsyncGenerator[Session, None]:
    """
    FastAPI dependency yielding one Session per request.

    Raises:
        HTTPException: 503 when DATABASE_URL is not configured
    """
    try:
        session_factory = get_session_factory()
    except ValueError as e:
        logger.error("Membership store not configured", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Membership store not configured"
        )

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def run_with_retry(session: Session, operation: Callable[[], T], attempts: int = 2) -> T:
    """
    Run a store operation, retrying once after a transient disconnect.

    The session is rolled back between attempts so the retry starts from a
    clean transaction. Any other error propagates unchanged.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OperationalError as e:
            session.rollback()
            if attempt >= attempts:
                raise
            logger.warning(
                "Transient database error, retrying",
                extra={"attempt": attempt, "error": str(e)}
            )
    raise RuntimeError("unreachable")
