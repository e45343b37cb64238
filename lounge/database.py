"""Engine, session factory and declarative base."""
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings

settings = get_settings()

DEFAULT_WAIT_MS = max(1, int(settings.store_timeout_seconds * 1000))


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.store_timeout_seconds}
    if url.startswith("postgresql"):
        return {"connect_timeout": max(1, int(settings.store_timeout_seconds))}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "checkin")
def _restore_default_wait(dbapi_connection, connection_record) -> None:
    # a bounded call may have shortened the busy timeout of this pooled connection
    if dbapi_connection is not None and engine.dialect.name == "sqlite":
        dbapi_connection.execute(f"PRAGMA busy_timeout = {DEFAULT_WAIT_MS}")


def apply_wait_budget(db: Session, seconds: float) -> None:
    """Bound lock and statement waits on the session's current connection.

    PostgreSQL scopes the limits to the open transaction. SQLite has no
    statement timeout; its busy timeout covers waiting on another writer.
    """
    millis = max(1, int(seconds * 1000))
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        db.execute(text(f"PRAGMA busy_timeout = {millis}"))
    elif dialect == "postgresql":
        db.execute(text(f"SET LOCAL lock_timeout = {millis}"))
        db.execute(text(f"SET LOCAL statement_timeout = {millis}"))


def reset_wait_budget(db: Session) -> None:
    if not db.in_transaction():
        return
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        db.execute(text(f"PRAGMA busy_timeout = {DEFAULT_WAIT_MS}"))
    elif dialect == "postgresql":
        db.execute(text("SET LOCAL lock_timeout TO DEFAULT"))
        db.execute(text("SET LOCAL statement_timeout TO DEFAULT"))


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
