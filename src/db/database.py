from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from src.db.models import Base

settings = get_settings()

UNIQUE_VIOLATION = "23505"

# Sync engine/session
engine = create_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_size=settings.db_pool_size,
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(bind=None) -> list[str]:
    """Create missing tables (and their partial unique indices); returns the table names."""
    Base.metadata.create_all(bind=bind or engine)
    names = sorted(Base.metadata.tables)
    logger.info(f"Database tables initialized ({len(names)} tables)")
    return names


@contextmanager
def session_scope(session_factory=None) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:  # Intentionally broad - rollback on any error before re-raising
        session.rollback()
        raise
    finally:
        session.close()


# ========================================
# Advisory locks & error classification
# ========================================


def fnv64a(data: str) -> int:
    """64-bit FNV-1a hash of a UTF-8 string, as an unsigned int."""
    h = 0xCBF29CE484222325
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * 0x100000001B3) & 0xFFFFFFFFFFFFFFFF
    return h


def advisory_lock_key(stage: str, entity_id: object) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock, derived from stage and entity id."""
    h = fnv64a(f"{stage}:{entity_id}")
    return h - (1 << 64) if h >= (1 << 63) else h


def advisory_xact_lock(session: Session, stage: str, entity_id: object) -> None:
    """Block until the transaction-scoped advisory lock for (stage, entity) is granted."""
    key = advisory_lock_key(stage, entity_id)
    logger.debug(f"Acquiring advisory lock {stage}:{entity_id} ({key})")
    session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})


def is_unique_violation(exc: BaseException) -> bool:
    """True when exc (or its DBAPI cause) is a Postgres unique violation (SQLSTATE 23505)."""
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, DBAPIError) and current.orig is not None:
            current = current.orig
            continue
        pgcode = getattr(current, "pgcode", None) or getattr(current, "sqlstate", None)
        if pgcode == UNIQUE_VIOLATION:
            return True
        if "duplicate key value violates unique constraint" in str(current):
            return True
        current = current.__cause__
    return False
