"""Connection lifecycle: encrypted OAuth credentials per organisation.

A connection is the only place a long-lived provider credential lives.
It is encrypted on write and decrypted only through
:meth:`ConnectionService.get_decrypted`, which refuses to open REVOKED
connections.  Status moves follow ``CONNECTION_TRANSITIONS``:

    ACTIVE <-> NEEDS_REAUTH, either -> REVOKED (terminal)

Re-authorising an existing Google connection without a new refresh token
keeps the stored one; if that token is stale the next refresh fails with
``invalid_grant`` and the connection drops back to NEEDS_REAUTH.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.encryption import CredentialCipher, get_cipher
from receiptsync.core.errors import (
    CredentialDecryptError,
    DecodeError,
    MissingCredentialError,
    MissingScopesError,
    NotFoundError,
    ReauthRequiredError,
)
from receiptsync.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptsync.models.enums import ConnectionStatus, ConnectionType
from receiptsync.models.schemas import CONNECTION_METADATA_MODELS, GoogleConnectionMetadata
from receiptsync.models.tables import Connection
from receiptsync.models.transitions import check_transition, transition
from receiptsync.services.google_oauth import (
    GOOGLE_REQUIRED_SCOPES,
    GoogleOAuthClient,
    GoogleTokenProvider,
    get_google_token_provider,
    missing_scopes,
)
from receiptsync.services.notion_client import NotionOAuthClient
from receiptsync.utils.helpers import utcnow

logger = logging.getLogger(__name__)

REQUIRED_SCOPES: Dict[ConnectionType, frozenset] = {
    ConnectionType.GOOGLE: GOOGLE_REQUIRED_SCOPES,
    # Notion does not report granted scopes
    ConnectionType.NOTION: frozenset(),
}


@dataclass(frozen=True)
class DecryptedConnection:
    id: str
    org_id: str
    type: ConnectionType
    status: ConnectionStatus
    credential: str
    metadata: Dict[str, Any]


def seal_oauth_state(payload: Dict[str, Any], cipher: Optional[CredentialCipher] = None) -> str:
    """Encrypt the OAuth ``state`` so the callback can trust org and connection ids."""
    return (cipher or get_cipher()).encrypt(json.dumps(payload, separators=(",", ":")))


def open_oauth_state(state: str, cipher: Optional[CredentialCipher] = None) -> Dict[str, Any]:
    try:
        data = json.loads((cipher or get_cipher()).decrypt(state))
    except (CredentialDecryptError, ValueError) as exc:
        raise DecodeError("Invalid OAuth state") from exc
    if not isinstance(data, dict) or not data.get("orgId"):
        raise DecodeError("Invalid OAuth state")
    return data


def _validate_metadata(conn_type: ConnectionType, metadata: Dict[str, Any]) -> Dict[str, Any]:
    model = CONNECTION_METADATA_MODELS[conn_type]
    try:
        return model.model_validate(metadata).model_dump()
    except ValidationError as exc:
        raise DecodeError(f"Invalid {conn_type.value} connection metadata: {exc.errors()[0]['msg']}") from exc


def _check_scopes(conn_type: ConnectionType, granted_scopes: Optional[str]) -> None:
    required = REQUIRED_SCOPES[conn_type]
    if not required:
        return
    missing = missing_scopes(granted_scopes, required)
    if missing:
        raise MissingScopesError(missing)


class ConnectionService:
    def __init__(self, cipher: Optional[CredentialCipher] = None) -> None:
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def get_connection(self, db: AsyncSession, connection_id: str, org_id: str) -> Connection:
        conn = await db.get(Connection, connection_id)
        if conn is None or conn.org_id != org_id:
            raise NotFoundError("Connection not found")
        return conn

    async def create(
        self,
        db: AsyncSession,
        org_id: str,
        conn_type: ConnectionType,
        raw_credential: str,
        metadata: Dict[str, Any],
        granted_scopes: Optional[str] = None,
    ) -> Connection:
        if not raw_credential:
            raise MissingCredentialError("A credential is required to create a connection")
        clean_metadata = _validate_metadata(conn_type, metadata)
        scopes = granted_scopes if granted_scopes is not None else clean_metadata.get("scopes")
        _check_scopes(conn_type, scopes)

        conn = Connection(
            org_id=org_id,
            type=conn_type,
            status=ConnectionStatus.ACTIVE,
            encrypted_credential=self.cipher.encrypt(raw_credential),
            provider_metadata=clean_metadata,
        )
        db.add(conn)
        await db.commit()
        await db.refresh(conn)
        sentry_metric_inc("connections.created", tags={"type": conn_type.value})
        logger.info("[connections] created org=%s type=%s id=%s", org_id, conn_type.value, conn.id)
        return conn

    async def update(
        self,
        db: AsyncSession,
        connection_id: str,
        org_id: str,
        new_credential: Optional[str] = None,
        metadata_updates: Optional[Dict[str, Any]] = None,
        status: Optional[ConnectionStatus] = None,
        granted_scopes: Optional[str] = None,
    ) -> Connection:
        conn = await self.get_connection(db, connection_id, org_id)
        clean_metadata = None
        if metadata_updates:
            merged = {**(conn.provider_metadata or {}), **metadata_updates}
            clean_metadata = _validate_metadata(conn.type, merged)

        # A new credential or a new grant must still cover the required scopes
        scopes_changed = granted_scopes is not None or "scopes" in (metadata_updates or {})
        if new_credential or scopes_changed:
            if granted_scopes is None:
                granted_scopes = (clean_metadata or conn.provider_metadata or {}).get("scopes")
            _check_scopes(conn.type, granted_scopes)
        if status is not None:
            check_transition("connection", conn.status, status)

        if clean_metadata is not None:
            conn.provider_metadata = clean_metadata

        if status is not None:
            transition("connection", conn, status)
            if status == ConnectionStatus.ACTIVE:
                conn.error = None
                conn.first_failed_at = None
                conn.last_failed_at = None

        if new_credential:
            conn.encrypted_credential = self.cipher.encrypt(new_credential)

        await db.commit()
        await db.refresh(conn)
        logger.info(
            "[connections] updated id=%s credential_replaced=%s status=%s",
            conn.id,
            bool(new_credential),
            conn.status.value,
        )
        return conn

    async def get_decrypted(self, db: AsyncSession, connection_id: str, org_id: str) -> DecryptedConnection:
        conn = await self.get_connection(db, connection_id, org_id)
        if conn.status == ConnectionStatus.REVOKED:
            raise ReauthRequiredError("Connection has been revoked", connection_id=conn.id)
        return DecryptedConnection(
            id=conn.id,
            org_id=conn.org_id,
            type=conn.type,
            status=conn.status,
            credential=self.cipher.decrypt(conn.encrypted_credential),
            metadata=dict(conn.provider_metadata or {}),
        )

    async def mark_needs_reauth(self, db: AsyncSession, connection_id: str, message: str) -> Connection:
        conn = await db.get(Connection, connection_id)
        if conn is None:
            raise NotFoundError("Connection not found")
        transition("connection", conn, ConnectionStatus.NEEDS_REAUTH)
        now = utcnow()
        conn.error = message
        conn.first_failed_at = conn.first_failed_at or now
        conn.last_failed_at = now
        await db.commit()
        sentry_metric_inc("connections.needs_reauth", tags={"type": conn.type.value})
        logger.warning("[connections] needs re-auth id=%s reason=%s", conn.id, message)
        return conn

    async def revoke(
        self,
        db: AsyncSession,
        org_id: str,
        connection_id: str,
        oauth: Optional[GoogleOAuthClient] = None,
        token_provider: Optional[GoogleTokenProvider] = None,
    ) -> Connection:
        conn = await self.get_connection(db, connection_id, org_id)
        credential: Optional[str] = None
        if conn.type == ConnectionType.GOOGLE and conn.status != ConnectionStatus.REVOKED:
            credential = self.cipher.decrypt(conn.encrypted_credential)
        transition("connection", conn, ConnectionStatus.REVOKED)
        await db.commit()
        if credential:
            if not await (oauth or GoogleOAuthClient()).revoke(credential):
                logger.warning("[connections] google revoke refused id=%s", conn.id)
            await (token_provider or get_google_token_provider()).forget(conn.id)
        sentry_breadcrumb(category="connections", message="connection.revoked", data={"connection_id": conn.id})
        logger.info("[connections] revoked org=%s id=%s", org_id, conn.id)
        return conn

    async def list_for_org(
        self,
        db: AsyncSession,
        org_id: str,
        conn_type: Optional[ConnectionType] = None,
        include_revoked: bool = False,
    ) -> List[Connection]:
        stmt = select(Connection).where(Connection.org_id == org_id)
        if conn_type is not None:
            stmt = stmt.where(Connection.type == conn_type)
        if not include_revoked:
            stmt = stmt.where(Connection.status != ConnectionStatus.REVOKED)
        stmt = stmt.order_by(Connection.created_at.desc())
        return list((await db.execute(stmt)).scalars().all())

    # --- OAuth completion -----------------------------------------------
    async def complete_google_oauth(
        self,
        db: AsyncSession,
        org_id: str,
        code: str,
        connection_id: Optional[str] = None,
        oauth: Optional[GoogleOAuthClient] = None,
        token_provider: Optional[GoogleTokenProvider] = None,
    ) -> Connection:
        """Exchange ``code`` and create or re-authorise a Google connection."""
        oauth = oauth or GoogleOAuthClient()
        provider = token_provider or get_google_token_provider()
        grant = await oauth.exchange_code(code)

        if not grant.credential and not connection_id:
            raise MissingCredentialError("Google did not return a refresh token. Remove the app's access and try again.")
        _check_scopes(ConnectionType.GOOGLE, grant.scopes)

        info = await oauth.get_user_info(grant.access_token)
        metadata = GoogleConnectionMetadata(
            scopes=grant.scopes,
            owner_email=info.email,
            owner_full_name=info.name,
            owner_google_user_id=info.id,
        ).model_dump()

        if connection_id:
            if not grant.credential:
                logger.warning(
                    "[connections] google re-auth without refresh token; keeping stored credential id=%s",
                    connection_id,
                )
            conn = await self.update(
                db,
                connection_id,
                org_id,
                new_credential=grant.credential,
                metadata_updates=metadata,
                status=ConnectionStatus.ACTIVE,
                granted_scopes=grant.scopes,
            )
            await provider.forget(conn.id)
        else:
            conn = await self.create(db, org_id, ConnectionType.GOOGLE, grant.credential or "", metadata, grant.scopes)
        if grant.credential:
            await provider.prime(conn.id, grant)
        return conn

    async def complete_notion_oauth(
        self,
        db: AsyncSession,
        org_id: str,
        code: str,
        connection_id: Optional[str] = None,
        oauth: Optional[NotionOAuthClient] = None,
    ) -> Connection:
        grant, metadata = await (oauth or NotionOAuthClient()).exchange_code(code)
        if connection_id:
            return await self.update(
                db,
                connection_id,
                org_id,
                new_credential=grant.credential,
                metadata_updates=metadata.model_dump(),
                status=ConnectionStatus.ACTIVE,
            )
        return await self.create(db, org_id, ConnectionType.NOTION, grant.credential or "", metadata.model_dump())


connection_service = ConnectionService()

__all__ = [
    "ConnectionService",
    "DecryptedConnection",
    "connection_service",
    "seal_oauth_state",
    "open_oauth_state",
    "REQUIRED_SCOPES",
]
