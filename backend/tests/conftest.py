from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest_asyncio

# Must be set before receiptsync.core.config is first imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DRAMATIQ_BROKER", "stub")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_SECRET_KEY", "test-secret-key")
os.environ.setdefault("TOKEN_CACHE_BACKEND", "memory")

# Add backend folder to sys.path so `import receiptsync...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from receiptsync.models.tables import Base  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
