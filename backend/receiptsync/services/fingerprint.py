"""Content fingerprinting for receipt images.

Every input representation (raw bytes, a base64 payload or a remote
URL) is reduced to bytes first and then hashed by the same routine, so
identical content always produces the same 64 character lowercase
SHA-256 hex digest.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from receiptsync.core.errors import DecodeError, FetchError

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:[^;,]*(;[^,]*)?;base64,", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_FETCH_TIMEOUT = httpx.Timeout(20.0, connect=5.0)


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def decode_base64(payload: str) -> bytes:
    """Decode a base64 string or ``data:`` URL, raising ``DecodeError`` on junk."""
    if not isinstance(payload, str):
        raise DecodeError("Base64 payload must be a string")
    body = _DATA_URL_RE.sub("", payload.strip(), count=1)
    body = _WHITESPACE_RE.sub("", body)
    if not body:
        raise DecodeError("Base64 payload is empty")
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Malformed base64 payload: {exc}") from exc


def fingerprint_base64(payload: str) -> str:
    return fingerprint_bytes(decode_base64(payload))


async def fetch_bytes(url: str, client: Optional[httpx.AsyncClient] = None) -> bytes:
    """GET ``url`` and return the body; any failure becomes ``FetchError``."""
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=DEFAULT_FETCH_TIMEOUT, follow_redirects=True)
    try:
        try:
            resp = await http.get(url)
        except httpx.HTTPError as exc:
            logger.warning("[fingerprint] fetch failed url=%s err=%s", url, exc)
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc
        if resp.status_code < 200 or resp.status_code >= 300:
            raise FetchError(
                f"Failed to fetch {url}: HTTP {resp.status_code}",
                upstream_status=resp.status_code,
            )
        return resp.content
    finally:
        if owns_client:
            await http.aclose()


async def fingerprint_url(url: str, client: Optional[httpx.AsyncClient] = None) -> str:
    return fingerprint_bytes(await fetch_bytes(url, client=client))


@dataclass(frozen=True)
class ContentSource:
    """One of the accepted input representations.  Exactly one field is set."""

    data: Optional[bytes] = None
    base64: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def of(cls, value: Union[bytes, str]) -> "ContentSource":
        """Classify a loose value: bytes, http(s) URL, otherwise base64."""
        if isinstance(value, (bytes, bytearray)):
            return cls(data=bytes(value))
        if value.startswith(("http://", "https://")):
            return cls(url=value)
        return cls(base64=value)


async def load_bytes(source: ContentSource, client: Optional[httpx.AsyncClient] = None) -> bytes:
    """Resolve ``source`` to the raw bytes that get hashed and extracted."""
    if source.data is not None:
        return source.data
    if source.base64 is not None:
        return decode_base64(source.base64)
    if source.url is not None:
        return await fetch_bytes(source.url, client=client)
    raise DecodeError("No content supplied")


async def fingerprint(source: ContentSource, client: Optional[httpx.AsyncClient] = None) -> str:
    return fingerprint_bytes(await load_bytes(source, client=client))


__all__ = [
    "ContentSource",
    "decode_base64",
    "fetch_bytes",
    "fingerprint",
    "fingerprint_base64",
    "fingerprint_bytes",
    "fingerprint_url",
    "load_bytes",
]
