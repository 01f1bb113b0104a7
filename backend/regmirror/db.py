"""Database configuration and session management."""

import logging
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from regmirror.config import Settings

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not database_url.startswith("sqlite") or ":memory:" in database_url:
        return

    db_path = database_url.replace("sqlite+aiosqlite:///", "").replace("sqlite+aiosqlite://", "")
    db_dir = Path(db_path).resolve().parent
    db_dir.mkdir(parents=True, exist_ok=True)


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite uses a single persistent connection (StaticPool) and gets foreign
    keys enabled on every connection. Other backends use a regular pool.
    """
    if "sqlite" in database_url:
        _ensure_sqlite_directory(database_url)
        engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            pool_reset_on_return=None,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the settings every regmirror session uses."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine(Settings.from_env().database_url)
AsyncSessionLocal = create_session_factory(engine)


async def get_db() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(db_engine: AsyncEngine = None) -> None:
    """Create cache tables and apply SQLite pragmas."""
    # Import models so they are registered on Base.metadata
    import regmirror.models  # noqa: F401

    db_engine = db_engine or engine
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if db_engine.dialect.name == "sqlite":
            # WAL mode lets UI readers proceed while a sync writes
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))
            await conn.execute(text("PRAGMA busy_timeout=5000"))
            logger.info("SQLite optimizations applied: WAL mode, 5s busy timeout")
