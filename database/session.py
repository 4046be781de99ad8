"""
Async engine and sessions shared by the chat store and the SQL job store.

Sync URLs from settings are mapped to their async drivers:
  postgresql:// → asyncpg    mysql:// → aiomysql    sqlite:// → aiosqlite

SQLite connections run in WAL mode with a busy timeout, so scheduler
claims (single-row conditional UPDATEs) from concurrent jobs wait for
the writer instead of failing with "database is locked".

Usage:
    configure_engine("sqlite:///./chatflow.db")   # optional; defaults to settings
    await init_db()
    async with get_session() as db:                # one transaction, committed on exit
        await db.execute(...)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

SQLITE_BUSY_TIMEOUT_MS = 30_000

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Swap a sync driver for its async counterpart; async URLs pass through."""
    url = make_url(db_url)
    driver = _ASYNC_DRIVERS.get(url.get_backend_name())
    if driver is None or url.drivername in ("postgresql+asyncpg", "mysql+aiomysql", "sqlite+aiosqlite"):
        return db_url
    return url.set(drivername=driver).render_as_string(hide_password=False)


def _engine_kwargs(async_url: str, echo: bool = False) -> dict[str, Any]:
    if make_url(async_url).get_backend_name() == "sqlite":
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    # Scheduler pool plus API requests share these connections
    return {
        "echo": echo,
        "pool_size": 15,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


def _safe_url(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def configure_engine(db_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """(Re)create the global engine for ``db_url`` (defaults to settings)."""
    global _engine, _session_factory
    settings = get_settings()
    async_url = _to_async_url(db_url or settings.database.url)
    _engine = create_async_engine(
        async_url, **_engine_kwargs(async_url, echo=settings.debug if echo is None else echo),
    )
    if _engine.dialect.name == "sqlite":
        _install_sqlite_pragmas(_engine)
    _session_factory = None
    logger.info("database_engine_created", dialect=_engine.dialect.name, url=_safe_url(_engine))
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return configure_engine()
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Commit on success, roll back and re-raise on error."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables for every row model."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
