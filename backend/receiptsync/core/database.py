"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory shared by the API and the Dramatiq worker.  The connection
string comes from ``DATABASE_URL``.  When it is unset a local SQLite
database is used, provided ``DB_DEV_FALLBACK_SQLITE`` is enabled.
Postgres URLs are normalised to the async psycopg driver.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base

from receiptsync.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./receiptsync.db"


def normalise_database_url(raw_url: Optional[str]) -> str:
    """Return an async-driver URL for ``raw_url``.

    - ``sqlite://`` is upgraded to ``sqlite+aiosqlite://``
    - ``postgres://``, ``postgresql://`` and the psycopg2/asyncpg variants
      are rewritten to ``postgresql+psycopg://`` with ``sslmode=require``
      unless an sslmode is given explicitly
    """
    if not raw_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL

    url_obj = make_url(raw_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        return str(url_obj.set(drivername="sqlite+aiosqlite"))
    if driver in {"postgres", "postgresql", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode") and url_obj.host not in ("localhost", "127.0.0.1", None):
            q["sslmode"] = "require"
        return url_obj.set(drivername="postgresql+psycopg", query=q).render_as_string(hide_password=False)
    return raw_url


db_url = normalise_database_url(settings.DATABASE_URL)

engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
engine = create_async_engine(db_url, **engine_kwargs)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables defined on the declarative ``Base``.

    Typically called during application startup and by the worker
    bootstrap.  Existing tables are left untouched.
    """
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from receiptsync.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine.

    The password is stripped from the reported URL.
    """
    info: Dict[str, Any] = {"environment": settings.ENVIRONMENT or "development"}
    try:
        url_obj = make_url(str(engine.url))
        info.update(
            {
                "drivername": url_obj.drivername,
                "host": url_obj.host,
                "database": url_obj.database,
                "url": str(url_obj.set(password=None)),
            }
        )
    except Exception as ex:
        info["error"] = f"unable to parse engine url: {ex}"
    return info
