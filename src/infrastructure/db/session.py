# src/infrastructure/db/session.py

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, ContextManager, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from src.infrastructure.config import DATABASE_URL


# -----------------------------
# Engine
# -----------------------------
def build_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine: Engine = build_engine(DATABASE_URL)


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Session Factory
# -----------------------------
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)

SessionScope = Callable[[], ContextManager[Session]]


def make_session_scope(factory: sessionmaker) -> SessionScope:
    """
    Returns a context manager factory that yields one session per
    transaction: commit on success, rollback on error, always close.
    """

    @contextmanager
    def scope() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


# -----------------------------
# Context Manager (Non-FastAPI usage)
# -----------------------------
get_db_session: SessionScope = make_session_scope(SessionLocal)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Some dialects (SQLite) hand back naive datetimes for timezone-aware
    columns. Everything is stored as UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
