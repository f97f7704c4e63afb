"""
Async engine and session scope for the back-office tables.

The configured URL may be written with the plain driver scheme; it is
mapped to the async driver SQLAlchemy needs:

  postgresql:// | postgres://   → postgresql+asyncpg://   (extra: postgres)
  mysql:// | mysql+pymysql://   → mysql+aiomysql://       (extra: mysql)
  sqlite://                     → sqlite+aiosqlite://

Every store call opens its own session through get_session(), so one
store call is one transaction.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

ASYNC_SCHEMES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in ASYNC_SCHEMES:
        return db_url
    return f"{ASYNC_SCHEMES[scheme]}://{rest}"


def _redact(url: str) -> str:
    """Drop credentials from a URL before it is logged."""
    return url.split("@")[-1] if "@" in url else url


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    # SQLite ignores FOREIGN KEY clauses unless asked per connection.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def configure_engine(db_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """(Re)create the global engine for `db_url`, or for the configured database URL."""
    global _engine, _session_factory
    settings = get_settings()
    db_url = _to_async_url(db_url or settings.database.url)
    echo = settings.debug if echo is None else echo

    if db_url.startswith("sqlite"):
        _engine = create_async_engine(db_url, echo=echo,
                                      connect_args={"check_same_thread": False})
        _enable_sqlite_foreign_keys(_engine)
    else:
        _engine = create_async_engine(
            db_url, echo=echo,
            pool_size=10, max_overflow=20, pool_timeout=30,
            pool_recycle=1800, pool_pre_ping=True,
        )

    _session_factory = None
    logger.info("database_engine_created",
                dialect=_engine.dialect.name, url=_redact(str(_engine.url)))
    return _engine


def get_engine() -> AsyncEngine:
    return _engine if _engine is not None else configure_engine()


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Commit on success, roll back and re-raise on any error."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession,
                                              expire_on_commit=False)
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create any missing tables (existing tables are left untouched)."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
