"""
Engine and session scope for the SQL store.

``settings.database.url`` is written with a plain scheme (``postgresql://``,
``mysql://``, ``sqlite://``); the async driver is filled in here:

  postgresql / postgres  → asyncpg
  mysql                  → aiomysql
  sqlite                 → aiosqlite

``configure_engine(url)`` replaces the configured URL until ``close_db()``.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "asyncpg",
    "mysql": "aiomysql",
    "sqlite": "aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None
_url_override: Optional[str] = None


def _async_url(url: URL) -> URL:
    backend = url.drivername.split("+", 1)[0]
    if backend == "postgres":
        backend = "postgresql"
    driver = ASYNC_DRIVERS.get(backend)
    if driver is None:
        return url
    return url.set(drivername=f"{backend}+{driver}")


def _to_async_url(db_url: str) -> str:
    return _async_url(make_url(db_url)).render_as_string(hide_password=False)


def _engine_options(url: URL) -> dict:
    options: dict = {"echo": get_settings().debug}
    if url.get_backend_name() == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
        # Every session must see the same in-memory database
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        return options

    # Webhook turns hold a connection only for log writes
    options.update(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=1800)
    return options


def configure_engine(db_url: str) -> None:
    global _url_override
    _url_override = db_url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = _async_url(make_url(_url_override or get_settings().database.url))
        _engine = create_async_engine(url, **_engine_options(url))
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    database=url.database, host=url.host)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: committed on success, rolled back on error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions, _url_override
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _sessions = None
    _url_override = None
