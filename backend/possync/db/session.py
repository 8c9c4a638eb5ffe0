"""Database engine and session dependency.

Sync sessions claim queue rows with conditional UPDATEs while devices keep
enqueueing, so SQLite runs in WAL mode with a busy timeout instead of
failing fast on a locked database.
"""

from collections.abc import Generator
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from possync.core.config import settings

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_options(url: str) -> dict[str, Any]:
    if _is_sqlite(url):
        return {
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
            "pool_pre_ping": True,
            "pool_recycle": 1800,
        }
    # PostgreSQL: sized for one sync runner per terminal plus API traffic
    return {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def build_engine(url: str) -> Engine:
    new_engine = create_engine(url, echo=False, **_engine_options(url))

    if _is_sqlite(url):
        in_memory = ":memory:" in url or url.rstrip("/") == "sqlite:"

        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return new_engine


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
