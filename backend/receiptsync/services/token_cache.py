"""Access-token cache with expiry-aware refresh on read.

Long-lived credentials (refresh tokens) stay encrypted in the database;
the short-lived access tokens derived from them are kept here.  A token
that expires within ``EXPIRY_SKEW`` is treated as already expired so a
request never starts with a token about to die mid-flight.

Two implementations share the :class:`TokenCache` interface:

- :class:`InMemoryTokenCache`: per process; a per-key asyncio lock means
  concurrent readers in the same process trigger a single refresh.
- :class:`RedisTokenCache`: shared between API and worker processes.
  Values are encrypted with the credential cipher and expire with the
  token.  Refreshes racing across processes are tolerated.
"""

from __future__ import annotations

import abc
import asyncio
import datetime as dt
import json
import logging
import weakref
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from receiptsync.core.config import settings
from receiptsync.core.encryption import CredentialCipher, get_cipher
from receiptsync.core.errors import CredentialDecryptError
from receiptsync.services.cache import get_redis, token_cache_key
from receiptsync.utils.helpers import utcnow

logger = logging.getLogger(__name__)

EXPIRY_SKEW = dt.timedelta(minutes=5)


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: dt.datetime

    def is_fresh(self, now: Optional[dt.datetime] = None) -> bool:
        return (now or utcnow()) + EXPIRY_SKEW < self.expires_at

    def to_json(self) -> str:
        return json.dumps({"access_token": self.access_token, "expires_at": self.expires_at.isoformat()})

    @classmethod
    def from_json(cls, raw: str) -> "CachedToken":
        data = json.loads(raw)
        return cls(access_token=data["access_token"], expires_at=dt.datetime.fromisoformat(data["expires_at"]))


Refresher = Callable[[], Awaitable[CachedToken]]


class TokenCache(abc.ABC):
    """Interface: ``get``/``set``/``invalidate`` plus ``get_or_refresh``.

    Refresh locks are held weakly and keyed by event loop, so a key only
    owns a lock while a refresh for it is in flight.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Tuple[int, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[CachedToken]:
        ...

    @abc.abstractmethod
    async def set(self, key: str, token: CachedToken) -> None:
        ...

    @abc.abstractmethod
    async def _delete(self, key: str) -> None:
        ...

    async def invalidate(self, key: str) -> None:
        self._locks.pop((id(asyncio.get_running_loop()), key), None)
        await self._delete(key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock_key = (id(asyncio.get_running_loop()), key)
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lock_key] = lock
        return lock

    async def get_or_refresh(self, key: str, refresh: Refresher) -> str:
        """Return a fresh access token for ``key``, refreshing when stale."""
        cached = await self.get(key)
        if cached is not None and cached.is_fresh():
            return cached.access_token
        lock = self._lock_for(key)
        async with lock:
            cached = await self.get(key)
            if cached is not None and cached.is_fresh():
                return cached.access_token
            token = await refresh()
            await self.set(key, token)
            logger.debug("[token-cache] refreshed key=%s expires_at=%s", key, token.expires_at.isoformat())
            return token.access_token


class InMemoryTokenCache(TokenCache):
    def __init__(self) -> None:
        super().__init__()
        self._entries: Dict[str, CachedToken] = {}

    async def get(self, key: str) -> Optional[CachedToken]:
        return self._entries.get(key)

    async def set(self, key: str, token: CachedToken) -> None:
        self._entries[key] = token

    async def _delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisTokenCache(TokenCache):
    def __init__(self, redis=None, cipher: Optional[CredentialCipher] = None) -> None:
        super().__init__()
        self._redis = redis
        self._cipher = cipher

    async def _client(self):
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def get(self, key: str) -> Optional[CachedToken]:
        raw = await (await self._client()).get(token_cache_key(key))
        if raw is None:
            return None
        try:
            return CachedToken.from_json(self.cipher.decrypt(raw))
        except (CredentialDecryptError, ValueError, KeyError) as exc:
            logger.warning("[token-cache] dropping unreadable entry key=%s err=%s", key, exc)
            await self._delete(key)
            return None

    async def set(self, key: str, token: CachedToken) -> None:
        ttl = int((token.expires_at - utcnow()).total_seconds())
        if ttl <= 0:
            return
        await (await self._client()).set(token_cache_key(key), self.cipher.encrypt(token.to_json()), ex=ttl)

    async def _delete(self, key: str) -> None:
        await (await self._client()).delete(token_cache_key(key))


def build_token_cache(backend: Optional[str] = None) -> TokenCache:
    backend = (backend or settings.TOKEN_CACHE_BACKEND or "memory").lower()
    if backend == "redis":
        return RedisTokenCache()
    return InMemoryTokenCache()


__all__ = [
    "CachedToken",
    "TokenCache",
    "InMemoryTokenCache",
    "RedisTokenCache",
    "build_token_cache",
    "EXPIRY_SKEW",
]
