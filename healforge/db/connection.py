"""
Database Connection Manager
===========================

Handles the async connection to the HealForge SQLite database.
"""

from pathlib import Path
from typing import Optional, Union

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession

from healforge.db.models import Base

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


async def init_db(db_path: Union[str, Path]) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.

    The parent directory of the database file is created when missing.
    """
    global _async_session_maker, _engine

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite+aiosqlite:///{db_path}"

    if _engine is not None:
        await _engine.dispose()

    _engine = create_async_engine(db_url, echo=False)

    @event.listens_for(_engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create tables
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)

    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


async def get_db():
    """Dependency for getting a database session."""
    maker = get_session_maker()
    async with maker() as session:
        yield session


async def close_db() -> None:
    """Dispose of the engine and forget the session maker."""
    global _async_session_maker, _engine
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
