"""Shared async Redis client.

Used by the Redis-backed token cache.  Keys are always namespaced by
purpose (``tokens:...``) and carry a TTL so nothing lives forever.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from redis import asyncio as aioredis

from receiptsync.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None
_lock = asyncio.Lock()


async def get_redis() -> aioredis.Redis:
    """Return a singleton async Redis client."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    async with _lock:
        if _redis_client is None:
            _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
            logger.info("[cache] redis client created")
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def token_cache_key(connection_id: str) -> str:
    return f"tokens:access:{connection_id}"
