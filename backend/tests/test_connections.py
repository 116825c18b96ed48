from __future__ import annotations

import datetime as dt

import pytest

from receiptsync.core.encryption import CredentialCipher
from receiptsync.core.errors import (
    DecodeError,
    InvalidTransitionError,
    MissingCredentialError,
    MissingScopesError,
    NotFoundError,
    ReauthRequiredError,
)
from receiptsync.models.enums import ConnectionStatus, ConnectionType
from receiptsync.models.tables import Organisation
from receiptsync.services.connection_service import ConnectionService, open_oauth_state, seal_oauth_state
from receiptsync.services.google_oauth import (
    GOOGLE_REQUIRED_SCOPES,
    GoogleTokenProvider,
    GoogleUserInfo,
    OAuthGrant,
)
from receiptsync.services.token_cache import InMemoryTokenCache
from receiptsync.utils.helpers import utcnow

ALL_SCOPES = " ".join(sorted(GOOGLE_REQUIRED_SCOPES))


class FakeGoogleOAuth:
    """Google OAuth stand-in; ``grants`` are handed out in order."""

    def __init__(self, *grants: OAuthGrant) -> None:
        self.grants = list(grants)
        self.revoked = []

    async def exchange_code(self, code):
        return self.grants.pop(0)

    async def get_user_info(self, access_token):
        return GoogleUserInfo(id="g-1", email="owner@example.com", name="Owner")

    async def refresh_access_token(self, refresh_token):
        return OAuthGrant(credential=refresh_token, access_token="refreshed", scopes=ALL_SCOPES, expires_at=None)

    async def revoke(self, token):
        self.revoked.append(token)
        return True


def _grant(refresh_token="rt-1", scopes=ALL_SCOPES):
    return OAuthGrant(
        credential=refresh_token,
        access_token="at-1",
        scopes=scopes,
        expires_at=utcnow() + dt.timedelta(hours=1),
    )


def _service():
    return ConnectionService(cipher=CredentialCipher("unit-test-key"))


async def _org(session, name="Acme"):
    org = Organisation(name=name)
    session.add(org)
    await session.commit()
    return org


@pytest.mark.asyncio
async def test_credentials_are_encrypted_at_rest(session_factory):
    svc = _service()
    async with session_factory() as session:
        org = await _org(session)
        conn = await svc.create(session, org.id, ConnectionType.NOTION, "secret_abc", {"workspace_id": "ws-1"})
        assert conn.status == ConnectionStatus.ACTIVE
        assert "secret_abc" not in conn.encrypted_credential

        opened = await svc.get_decrypted(session, conn.id, org.id)
    assert opened.credential == "secret_abc"
    assert opened.metadata["workspace_id"] == "ws-1"


@pytest.mark.asyncio
async def test_create_requires_credential_and_valid_metadata(session_factory):
    svc = _service()
    async with session_factory() as session:
        org = await _org(session)
        with pytest.raises(MissingCredentialError):
            await svc.create(session, org.id, ConnectionType.NOTION, "", {"workspace_id": "ws-1"})
        with pytest.raises(DecodeError):
            await svc.create(session, org.id, ConnectionType.NOTION, "tok", {"workspace": "typo"})


@pytest.mark.asyncio
async def test_google_connection_rejects_partial_scopes(session_factory):
    svc = _service()
    partial = "https://www.googleapis.com/auth/spreadsheets"
    provider = GoogleTokenProvider(oauth=FakeGoogleOAuth(), cache=InMemoryTokenCache())
    async with session_factory() as session:
        org = await _org(session)
        with pytest.raises(MissingScopesError) as exc_info:
            await svc.complete_google_oauth(
                session, org.id, "code", oauth=FakeGoogleOAuth(_grant(scopes=partial)), token_provider=provider
            )
        assert "https://www.googleapis.com/auth/drive.file" in exc_info.value.missing
        assert await svc.list_for_org(session, org.id) == []


@pytest.mark.asyncio
async def test_update_with_reduced_scopes_in_metadata_is_rejected(session_factory):
    svc = _service()
    metadata = {"scopes": ALL_SCOPES, "owner_email": "owner@example.com", "owner_google_user_id": "g-1"}
    async with session_factory() as session:
        org = await _org(session)
        conn = await svc.create(session, org.id, ConnectionType.GOOGLE, "K1", metadata)
        with pytest.raises(MissingScopesError):
            await svc.update(
                session,
                conn.id,
                org.id,
                new_credential="K2",
                metadata_updates={"scopes": "https://www.googleapis.com/auth/userinfo.email"},
            )
        decrypted = await svc.get_decrypted(session, conn.id, org.id)
        assert decrypted.credential == "K1"
        assert decrypted.metadata["scopes"] == ALL_SCOPES

        # a credential swap under the stored full grant is still accepted
        await svc.update(session, conn.id, org.id, new_credential="K3")
        assert (await svc.get_decrypted(session, conn.id, org.id)).credential == "K3"


@pytest.mark.asyncio
async def test_first_consent_without_refresh_token_is_rejected(session_factory):
    svc = _service()
    provider = GoogleTokenProvider(oauth=FakeGoogleOAuth(), cache=InMemoryTokenCache())
    async with session_factory() as session:
        org = await _org(session)
        with pytest.raises(MissingCredentialError):
            await svc.complete_google_oauth(
                session, org.id, "code", oauth=FakeGoogleOAuth(_grant(refresh_token=None)), token_provider=provider
            )


@pytest.mark.asyncio
async def test_reauth_without_new_refresh_token_keeps_stored_one(session_factory):
    svc = _service()
    cache = InMemoryTokenCache()
    oauth = FakeGoogleOAuth(_grant("rt-original"), _grant(refresh_token=None))
    provider = GoogleTokenProvider(oauth=oauth, cache=cache)
    async with session_factory() as session:
        org = await _org(session)
        conn = await svc.complete_google_oauth(session, org.id, "c1", oauth=oauth, token_provider=provider)
        assert conn.provider_metadata["owner_email"] == "owner@example.com"
        assert (await cache.get(conn.id)).access_token == "at-1"

        await svc.mark_needs_reauth(session, conn.id, "invalid_grant")
        again = await svc.complete_google_oauth(
            session, org.id, "c2", connection_id=conn.id, oauth=oauth, token_provider=provider
        )
        assert again.id == conn.id
        assert again.status == ConnectionStatus.ACTIVE
        assert again.error is None
        assert again.first_failed_at is None

        opened = await svc.get_decrypted(session, conn.id, org.id)
    assert opened.credential == "rt-original"
    # the cached token from the first grant was dropped
    assert await cache.get(conn.id) is None


@pytest.mark.asyncio
async def test_reauth_with_new_refresh_token_replaces_credential(session_factory):
    svc = _service()
    oauth = FakeGoogleOAuth(_grant("rt-1"), _grant("rt-2"))
    provider = GoogleTokenProvider(oauth=oauth, cache=InMemoryTokenCache())
    async with session_factory() as session:
        org = await _org(session)
        conn = await svc.complete_google_oauth(session, org.id, "c1", oauth=oauth, token_provider=provider)
        await svc.complete_google_oauth(session, org.id, "c2", connection_id=conn.id, oauth=oauth, token_provider=provider)
        opened = await svc.get_decrypted(session, conn.id, org.id)
    assert opened.credential == "rt-2"


@pytest.mark.asyncio
async def test_mark_needs_reauth_tracks_failure_window(session_factory):
    svc = _service()
    async with session_factory() as session:
        org = await _org(session)
        conn = await svc.create(session, org.id, ConnectionType.NOTION, "tok", {"workspace_id": "ws"})
        first = await svc.mark_needs_reauth(session, conn.id, "unauthorized")
        first_failed = first.first_failed_at
        second = await svc.mark_needs_reauth(session, conn.id, "unauthorized again")
    assert second.status == ConnectionStatus.NEEDS_REAUTH
    assert second.first_failed_at == first_failed
    assert second.last_failed_at >= first_failed
    assert second.error == "unauthorized again"


@pytest.mark.asyncio
async def test_revoke_is_terminal_and_blocks_decryption(session_factory):
    svc = _service()
    oauth = FakeGoogleOAuth(_grant("rt-1"))
    cache = InMemoryTokenCache()
    provider = GoogleTokenProvider(oauth=oauth, cache=cache)
    async with session_factory() as session:
        org = await _org(session)
        conn = await svc.complete_google_oauth(session, org.id, "c1", oauth=oauth, token_provider=provider)

        revoked = await svc.revoke(session, org.id, conn.id, oauth=oauth, token_provider=provider)
        assert revoked.status == ConnectionStatus.REVOKED
        assert oauth.revoked == ["rt-1"]
        assert await cache.get(conn.id) is None

        with pytest.raises(ReauthRequiredError):
            await svc.get_decrypted(session, conn.id, org.id)
        with pytest.raises(InvalidTransitionError):
            await svc.update(session, conn.id, org.id, status=ConnectionStatus.ACTIVE)
        assert await svc.list_for_org(session, org.id) == []
        assert len(await svc.list_for_org(session, org.id, include_revoked=True)) == 1


@pytest.mark.asyncio
async def test_connections_are_tenant_scoped(session_factory):
    svc = _service()
    async with session_factory() as session:
        org = await _org(session, "A")
        other = await _org(session, "B")
        conn = await svc.create(session, org.id, ConnectionType.NOTION, "tok", {"workspace_id": "ws"})
        with pytest.raises(NotFoundError):
            await svc.get_decrypted(session, conn.id, other.id)
        with pytest.raises(NotFoundError):
            await svc.revoke(session, other.id, conn.id)


def test_oauth_state_round_trip_and_tamper():
    cipher = CredentialCipher("state-key")
    state = seal_oauth_state({"orgId": "org-1", "connectionId": None, "returnPath": "/x"}, cipher=cipher)
    assert open_oauth_state(state, cipher=cipher)["orgId"] == "org-1"

    with pytest.raises(DecodeError):
        open_oauth_state(state, cipher=CredentialCipher("other-key"))
    with pytest.raises(DecodeError):
        open_oauth_state("not-a-state", cipher=cipher)
    with pytest.raises(DecodeError):
        open_oauth_state(seal_oauth_state({"connectionId": "c"}, cipher=cipher), cipher=cipher)
