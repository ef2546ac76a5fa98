"""Database connection and session management."""

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dedup_store.config import settings
from dedup_store.models import Base

def make_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine, applying SQLite pragmas when needed.

    SQLite only enforces foreign keys when asked to, and concurrent writers
    need a busy timeout instead of failing immediately with "database is locked".
    """
    connect_args: dict[str, Any] = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["timeout"] = settings.sqlite_busy_timeout_seconds

    new_engine = create_async_engine(database_url, echo=echo, connect_args=connect_args)

    if is_sqlite:

        @event.listens_for(new_engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return new_engine

def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)

engine = make_engine(settings.database_url, echo=settings.database_echo)

async_session_factory = make_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Initialize database tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
