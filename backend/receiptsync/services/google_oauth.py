"""Google OAuth 2.0: consent URL, code exchange, refresh, user info.

Token responses are normalised into :class:`OAuthGrant`.  The long-lived
credential stored on a connection is the refresh token; access tokens are
only ever handed out by :class:`GoogleTokenProvider`, which owns a
:class:`TokenCache` and refreshes on read when the cached token is close
to expiry.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set
from urllib.parse import urlencode

import httpx

from receiptsync.core.config import settings
from receiptsync.core.errors import FetchError, ReauthRequiredError
from receiptsync.services.token_cache import CachedToken, TokenCache, build_token_cache
from receiptsync.utils.helpers import utcnow

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

GOOGLE_REQUIRED_SCOPES = frozenset(
    {
        "https://www.googleapis.com/auth/spreadsheets",
        "https://www.googleapis.com/auth/drive.file",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    }
)

DEFAULT_TIMEOUT = httpx.Timeout(15.0, connect=5.0)


@dataclass(frozen=True)
class OAuthGrant:
    """Normalised token endpoint response."""

    credential: Optional[str]  # long-lived: refresh token (Google) / access token (Notion)
    access_token: str
    scopes: str
    expires_at: Optional[dt.datetime]

    def cached_token(self) -> Optional[CachedToken]:
        if self.expires_at is None:
            return None
        return CachedToken(access_token=self.access_token, expires_at=self.expires_at)


@dataclass(frozen=True)
class GoogleUserInfo:
    id: str
    email: str
    name: Optional[str]


def parse_scopes(scope: Optional[str]) -> Set[str]:
    return {s for s in (scope or "").split() if s}


def missing_scopes(scope: Optional[str], required: Iterable[str] = GOOGLE_REQUIRED_SCOPES) -> Set[str]:
    return set(required) - parse_scopes(scope)


def has_required_scopes(scope: Optional[str], required: Iterable[str] = GOOGLE_REQUIRED_SCOPES) -> bool:
    return not missing_scopes(scope, required)


def _expires_at(expires_in: Any) -> Optional[dt.datetime]:
    try:
        return utcnow() + dt.timedelta(seconds=int(expires_in))
    except (TypeError, ValueError):
        return None


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class GoogleOAuthClient:
    """Calls to Google's OAuth endpoints.

    Every call opens its own ``httpx.AsyncClient`` so the client never
    outlives the event loop it was used on; worker actors each run in a
    fresh ``asyncio.run`` loop.  Pass ``transport`` to mock the network.
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID or ""
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET or ""
        self._transport = transport

    @property
    def redirect_uri(self) -> str:
        return f"{settings.APP_BASE_URL.rstrip('/')}{settings.API_V1_STR}/callback/google"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=self._transport)

    def build_auth_url(self, state: str, scopes: Iterable[str] = GOOGLE_REQUIRED_SCOPES) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(sorted(scopes)),
            "state": state,
            "response_type": "code",
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with self._client() as http:
                resp = await http.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise FetchError(f"Google token request failed: {exc}") from exc
        if resp.status_code == 429:
            raise FetchError(
                "Google token endpoint rate limited",
                upstream_status=429,
                retry_after=_retry_after(resp),
            )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            if error == "invalid_grant":
                raise ReauthRequiredError("Google authorization has expired or was revoked")
            raise FetchError(
                f"Google token request failed: {error or resp.status_code}",
                upstream_status=resp.status_code,
            )
        return body

    @staticmethod
    def _grant(body: Dict[str, Any], credential: Optional[str]) -> OAuthGrant:
        return OAuthGrant(
            credential=credential,
            access_token=body["access_token"],
            scopes=body.get("scope", ""),
            expires_at=_expires_at(body.get("expires_in")),
        )

    async def exchange_code(self, code: str) -> OAuthGrant:
        body = await self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        # refresh_token is only returned on first consent (or prompt=consent)
        return self._grant(body, body.get("refresh_token"))

    async def refresh_access_token(self, refresh_token: str) -> OAuthGrant:
        body = await self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            }
        )
        return self._grant(body, body.get("refresh_token") or refresh_token)

    async def get_user_info(self, access_token: str) -> GoogleUserInfo:
        try:
            async with self._client() as http:
                resp = await http.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            raise FetchError(f"Google userinfo request failed: {exc}") from exc
        if resp.status_code == 401:
            raise ReauthRequiredError("Google rejected the access token")
        if resp.status_code >= 400:
            raise FetchError("Failed to fetch Google user info", upstream_status=resp.status_code)
        data = resp.json()
        name = data.get("name")
        if not name and (data.get("given_name") or data.get("family_name")):
            name = f"{data.get('given_name', '')} {data.get('family_name', '')}".strip()
        return GoogleUserInfo(id=str(data.get("id", "")), email=data.get("email", ""), name=name)

    async def revoke(self, token: str) -> bool:
        """Best-effort revocation at Google; returns False when Google refuses."""
        try:
            async with self._client() as http:
                resp = await http.post(
                    GOOGLE_REVOKE_URL,
                    params={"token": token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as exc:
            logger.warning("[google-oauth] revoke failed err=%s", exc)
            return False
        return resp.status_code < 400


class GoogleTokenProvider:
    """Sole issuer of Google access tokens, backed by a :class:`TokenCache`."""

    def __init__(self, oauth: Optional[GoogleOAuthClient] = None, cache: Optional[TokenCache] = None) -> None:
        self.oauth = oauth or GoogleOAuthClient()
        self.cache = cache or build_token_cache()

    async def access_token(self, connection_id: str, refresh_token: str) -> str:
        async def _refresh() -> CachedToken:
            grant = await self.oauth.refresh_access_token(refresh_token)
            expires_at = grant.expires_at or utcnow() + dt.timedelta(hours=1)
            return CachedToken(access_token=grant.access_token, expires_at=expires_at)

        try:
            return await self.cache.get_or_refresh(connection_id, _refresh)
        except ReauthRequiredError as exc:
            await self.cache.invalidate(connection_id)
            exc.connection_id = connection_id
            raise

    async def prime(self, connection_id: str, grant: OAuthGrant) -> None:
        token = grant.cached_token()
        if token is not None:
            await self.cache.set(connection_id, token)

    async def forget(self, connection_id: str) -> None:
        await self.cache.invalidate(connection_id)


_provider: Optional[GoogleTokenProvider] = None


def get_google_token_provider() -> GoogleTokenProvider:
    global _provider
    if _provider is None:
        _provider = GoogleTokenProvider()
    return _provider


__all__ = [
    "OAuthGrant",
    "GoogleUserInfo",
    "GoogleOAuthClient",
    "GoogleTokenProvider",
    "get_google_token_provider",
    "GOOGLE_REQUIRED_SCOPES",
    "has_required_scopes",
    "missing_scopes",
    "parse_scopes",
]
