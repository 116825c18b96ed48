"""Read-only browsing of what a connection can reach.

Used by the destination setup flow: list the tabs of a spreadsheet the
Google connection can open, or the Notion databases shared with the
integration and whether each one can take receipts.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from receiptsync.core.errors import DestinationConfigError
from receiptsync.models.enums import ConnectionType
from receiptsync.services.connection_service import DecryptedConnection
from receiptsync.services.google_oauth import GoogleTokenProvider, get_google_token_provider
from receiptsync.services.google_sheets import GoogleSheetsClient
from receiptsync.services.notion_client import NotionClient

logger = logging.getLogger(__name__)

UNTITLED_DATABASE = "Untitled Database"
MAX_SEARCH_PAGES = 20


def _require(connection: DecryptedConnection, conn_type: ConnectionType) -> None:
    if connection.type != conn_type:
        raise DestinationConfigError(f"Connection is not a {conn_type.value} connection")


async def describe_spreadsheet(
    connection: DecryptedConnection,
    spreadsheet_id: str,
    token_provider: Optional[GoogleTokenProvider] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    _require(connection, ConnectionType.GOOGLE)
    provider = token_provider or get_google_token_provider()

    async def _access_token() -> str:
        return await provider.access_token(connection.id, connection.credential)

    client = GoogleSheetsClient(_access_token, http)
    try:
        raw = await client.get_spreadsheet(spreadsheet_id)
    finally:
        await client.aclose()
    sheets = []
    for sheet in raw.get("sheets") or []:
        props = sheet.get("properties") or {}
        sheets.append({"id": props.get("sheetId", 0), "title": props.get("title", ""), "index": props.get("index", 0)})
    return {
        "id": raw.get("spreadsheetId", spreadsheet_id),
        "title": (raw.get("properties") or {}).get("title", ""),
        "sheets": sheets,
    }


def _plain_title(parts: List[Dict[str, Any]]) -> str:
    text = "".join(p.get("plain_text") or (p.get("text") or {}).get("content", "") for p in parts or [])
    return text.strip() or UNTITLED_DATABASE


def summarise_database(database: Dict[str, Any]) -> Dict[str, Any]:
    """Shape one Notion database object and check it can hold receipts."""
    properties = [
        {"id": prop.get("id", ""), "name": name, "type": prop.get("type", "")}
        for name, prop in (database.get("properties") or {}).items()
    ]
    errors = []
    if not any(p["type"] == "title" for p in properties):
        errors.append("Database has no title property")
    return {
        "id": database.get("id", ""),
        "title": _plain_title(database.get("title") or []),
        "valid": not errors,
        "errors": errors,
        "properties": properties,
    }


async def list_notion_databases(
    connection: DecryptedConnection,
    query: Optional[str] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    _require(connection, ConnectionType.NOTION)
    client = NotionClient(connection.credential, http)
    databases: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    try:
        for _ in range(MAX_SEARCH_PAGES):
            page = await client.search_databases(query=query, start_cursor=cursor)
            databases.extend(summarise_database(d) for d in page.get("results") or [])
            cursor = page.get("next_cursor")
            if not page.get("has_more") or not cursor:
                break
        else:
            logger.warning("[connections] notion search truncated connection=%s", connection.id)
    finally:
        await client.aclose()
    return databases


__all__ = ["describe_spreadsheet", "list_notion_databases", "summarise_database", "UNTITLED_DATABASE"]
