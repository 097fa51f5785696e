"""
Database engine configuration for docuvid.

Provides async SQLAlchemy engine with SQLite WAL mode,
crash-safe PRAGMA configuration, and session management.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docuvid.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Configure SQLite PRAGMA settings for crash safety and performance.

    - WAL mode: readers do not block the single writer
    - FULL synchronous: committed run state survives a crash
    - Foreign keys: needed for ON DELETE CASCADE of scenes/segments/steps
    - Busy timeout: concurrent claims wait for the write lock instead of failing
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, registering SQLite pragmas when applicable."""
    new_engine = create_async_engine(database_url, echo=False)
    if new_engine.dialect.name == "sqlite":
        # aiosqlite: listen on the sync engine
        event.listens_for(new_engine.sync_engine, "connect")(configure_sqlite_pragmas)
    return new_engine


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; expire_on_commit=False keeps returned rows readable."""
    return async_sessionmaker(
        bind,
        expire_on_commit=False,
        class_=AsyncSession,
    )


engine = create_engine(settings.storage.database_url)
async_session = create_session_factory(engine)


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
