"""Connection routes: list, OAuth authorize/callback, revoke and browsing.

The OAuth ``state`` is sealed with the credential cipher so the callback
can trust the organisation and connection ids it carries.  Callbacks
always redirect back to the frontend, with ``?error=<code>`` on failure.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.api.dependencies import get_db_session, get_org
from receiptsync.core.config import settings
from receiptsync.core.errors import (
    DecodeError,
    MissingCredentialError,
    MissingScopesError,
    NotFoundError,
    ReceiptSyncError,
)
from receiptsync.core.observability import sentry_breadcrumb
from receiptsync.models.enums import ConnectionType
from receiptsync.models.schemas import ConnectionResponse, NotionDatabaseResponse, SpreadsheetResponse
from receiptsync.models.tables import Organisation
from receiptsync.services import connection_browser
from receiptsync.services.connection_service import connection_service, open_oauth_state, seal_oauth_state
from receiptsync.services.google_oauth import GoogleOAuthClient
from receiptsync.services.notion_client import NotionOAuthClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connections"])

_CALLBACK_ERROR_CODES = {
    MissingCredentialError: "no_refresh_token",
    MissingScopesError: "missing_scopes",
    NotFoundError: "connection_not_found",
    DecodeError: "invalid_state",
}


def _frontend_redirect(return_path: Optional[str], org_id: Optional[str], **params: str) -> RedirectResponse:
    path = return_path if return_path and return_path.startswith("/") else f"/{org_id or ''}/destinations"
    query = f"?{urlencode(params)}" if params else ""
    return RedirectResponse(url=f"{settings.FRONTEND_BASE_URL.rstrip('/')}{path}{query}", status_code=302)


def _error_code(exc: ReceiptSyncError) -> str:
    for cls, code in _CALLBACK_ERROR_CODES.items():
        if isinstance(exc, cls):
            return code
    return exc.code


@router.get("/connections", response_model=List[ConnectionResponse])
async def list_connections(
    type: Optional[ConnectionType] = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> List[ConnectionResponse]:
    conns = await connection_service.list_for_org(db, org.id, conn_type=type)
    return [ConnectionResponse.model_validate(c) for c in conns]


async def _authorize_state(
    db: AsyncSession, org: Organisation, connection_id: Optional[str], return_path: Optional[str]
) -> str:
    if connection_id:
        await connection_service.get_connection(db, connection_id, org.id)
    return seal_oauth_state({"orgId": org.id, "connectionId": connection_id, "returnPath": return_path})


@router.get("/connections/google/authorize")
async def authorize_google(
    connection_id: Optional[str] = Query(default=None, alias="connectionId"),
    return_path: Optional[str] = Query(default=None, alias="returnPath"),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> RedirectResponse:
    state = await _authorize_state(db, org, connection_id, return_path)
    return RedirectResponse(url=GoogleOAuthClient().build_auth_url(state), status_code=302)


@router.get("/connections/notion/authorize")
async def authorize_notion(
    connection_id: Optional[str] = Query(default=None, alias="connectionId"),
    return_path: Optional[str] = Query(default=None, alias="returnPath"),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> RedirectResponse:
    state = await _authorize_state(db, org, connection_id, return_path)
    return RedirectResponse(url=NotionOAuthClient().build_auth_url(state), status_code=302)


async def _handle_callback(
    provider: ConnectionType,
    db: AsyncSession,
    code: Optional[str],
    error: Optional[str],
    state: str,
) -> RedirectResponse:
    try:
        payload = open_oauth_state(state)
    except DecodeError:
        return _frontend_redirect(None, None, error="invalid_state")

    org_id = payload["orgId"]
    connection_id = payload.get("connectionId")
    return_path = payload.get("returnPath")
    if error:
        logger.warning("[connections] %s oauth error org=%s error=%s", provider.value, org_id, error)
        return _frontend_redirect(return_path, org_id, error=error)
    if not code:
        return _frontend_redirect(return_path, org_id, error="no_code")
    if await db.get(Organisation, org_id) is None:
        return _frontend_redirect(return_path, org_id, error="unauthorized")

    try:
        if provider == ConnectionType.GOOGLE:
            conn = await connection_service.complete_google_oauth(db, org_id, code, connection_id=connection_id)
        else:
            conn = await connection_service.complete_notion_oauth(db, org_id, code, connection_id=connection_id)
    except ReceiptSyncError as exc:
        logger.warning("[connections] %s callback failed org=%s: %s", provider.value, org_id, exc.message)
        return _frontend_redirect(return_path, org_id, error=_error_code(exc))

    sentry_breadcrumb(category="connections", message=f"{provider.value}.connected", data={"connection_id": conn.id})
    return _frontend_redirect(return_path, org_id, success=f"{provider.value}_connected", connectionId=conn.id)


@router.get("/callback/google")
async def google_callback(
    state: str = Query(...),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
) -> RedirectResponse:
    return await _handle_callback(ConnectionType.GOOGLE, db, code, error, state)


@router.get("/callback/notion")
async def notion_callback(
    state: str = Query(...),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
) -> RedirectResponse:
    return await _handle_callback(ConnectionType.NOTION, db, code, error, state)


@router.delete("/connections/{connection_id}", response_model=ConnectionResponse)
async def revoke_connection(
    connection_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> ConnectionResponse:
    conn = await connection_service.revoke(db, org.id, connection_id)
    return ConnectionResponse.model_validate(conn)


@router.get("/connections/{connection_id}/spreadsheets", response_model=SpreadsheetResponse)
async def get_spreadsheet(
    connection_id: str,
    spreadsheet_id: str = Query(..., alias="spreadsheetId", min_length=1),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> SpreadsheetResponse:
    conn = await connection_service.get_decrypted(db, connection_id, org.id)
    return SpreadsheetResponse.model_validate(await connection_browser.describe_spreadsheet(conn, spreadsheet_id))


@router.get("/connections/{connection_id}/notion/databases", response_model=List[NotionDatabaseResponse])
async def list_notion_databases(
    connection_id: str,
    query: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> List[NotionDatabaseResponse]:
    conn = await connection_service.get_decrypted(db, connection_id, org.id)
    databases = await connection_browser.list_notion_databases(conn, query=query)
    return [NotionDatabaseResponse.model_validate(d) for d in databases]
