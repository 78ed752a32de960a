from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def make_engine(url: str, **kwargs):
    """
    Engine for a database URL. In-memory SQLite gets a single shared
    connection so every session sees the same tables.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    else:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 3600)  # Recycle connections after 1 hour
    return create_engine(url, future=True, **kwargs)


def make_session_factory(bind):
    # Ledger appends only flush; callers commit, so no autoflush surprises mid-unit-of-work
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


engine = make_engine(settings.database_url)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = make_session_factory(engine)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Drop the offset of an aware datetime (Postgres timestamptz reads) after converting to UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Factory for work that outlives one request session (scans, socket auth)."""
    return SessionLocal
