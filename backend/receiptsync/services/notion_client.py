"""Notion OAuth and database writer.

Only the handful of endpoints needed for receipt sync are wrapped: OAuth
token exchange, database search, retrieval and query, and page
create/update.  Notion error codes are mapped onto the shared error
taxonomy so the sync orchestrator can decide between retrying, recording
a per-record failure or flagging the connection for re-auth.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from receiptsync.core.config import settings
from receiptsync.core.errors import DestinationWriteError, FetchError, ReauthRequiredError
from receiptsync.models.schemas import NotionConfiguration, NotionConnectionMetadata
from receiptsync.models.tables import Receipt
from receiptsync.services.google_oauth import OAuthGrant

logger = logging.getLogger(__name__)

NOTION_API_ROOT = "https://api.notion.com/v1"
NOTION_AUTH_URL = f"{NOTION_API_ROOT}/oauth/authorize"
NOTION_VERSION = "2022-06-28"

RECEIPT_ID_PROPERTY = "Receipt ID"

# receipt field key -> default property name
DEFAULT_NOTION_PROPERTIES: Dict[str, str] = {
    "vendor": "Vendor",
    "date": "Date",
    "amount": "Amount",
    "currency": "Currency",
    "category": "Category",
    "notes": "Notes",
    "imageUrl": "Receipt Image",
}

READ_ONLY_TYPES = frozenset(
    {"formula", "rollup", "created_time", "created_by", "last_edited_time", "last_edited_by", "unique_id"}
)

_REAUTH_CODES = {"unauthorized", "restricted_resource"}
_RETRYABLE_CODES = {"rate_limited", "internal_server_error", "service_unavailable", "conflict_error"}


class NotionObjectNotFound(DestinationWriteError):
    """The database or page no longer exists (or is not shared with the integration)."""

    def __init__(self, message: str, *, receipt_id: Optional[str] = None) -> None:
        super().__init__(message, receipt_id=receipt_id, retryable=False)


def receipt_field_value(receipt: Receipt, key: str) -> Any:
    return {
        "id": receipt.id,
        "vendor": receipt.vendor,
        "date": receipt.receipt_date.isoformat() if receipt.receipt_date else None,
        "amount": receipt.amount,
        "currency": receipt.currency,
        "category": receipt.category,
        "taxAmount": receipt.tax_amount,
        "subtotal": receipt.subtotal,
        "paymentMethod": receipt.payment_method,
        "receiptNumber": receipt.receipt_number,
        "notes": receipt.notes,
        "imageUrl": receipt.original_image_key,
    }.get(key)


def _text(value: Any) -> list:
    return [{"type": "text", "text": {"content": str(value)[:2000]}}]


def to_property_value(prop_type: str, value: Any) -> Optional[Dict[str, Any]]:
    """Render ``value`` for a property of ``prop_type``; None when it cannot be written."""
    if value is None or prop_type in READ_ONLY_TYPES:
        return None
    if prop_type == "title":
        return {"title": _text(value)}
    if prop_type == "number":
        try:
            return {"number": float(value)}
        except (TypeError, ValueError):
            return None
    if prop_type == "select":
        return {"select": {"name": str(value)[:100]}}
    if prop_type == "multi_select":
        return {"multi_select": [{"name": str(value)[:100]}]}
    if prop_type == "date":
        return {"date": {"start": str(value)[:10]}}
    if prop_type == "url":
        return {"url": str(value)}
    if prop_type == "files":
        return {"files": [{"type": "external", "name": "Receipt", "external": {"url": str(value)}}]}
    if prop_type == "checkbox":
        return {"checkbox": bool(value)}
    return {"rich_text": _text(value)}


def _raise_for_notion(resp: httpx.Response, receipt_id: Optional[str]) -> None:
    if resp.status_code < 400:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {}
    code = body.get("code") if isinstance(body, dict) else None
    message = (body.get("message") if isinstance(body, dict) else None) or f"HTTP {resp.status_code}"
    if code in _REAUTH_CODES or resp.status_code == 401:
        raise ReauthRequiredError(f"Notion authorization failed: {message}")
    if code == "object_not_found" or resp.status_code == 404:
        raise NotionObjectNotFound(f"Notion object not found: {message}", receipt_id=receipt_id)
    if code in _RETRYABLE_CODES or resp.status_code == 429 or resp.status_code >= 500:
        raise DestinationWriteError(f"Notion temporarily unavailable: {message}", receipt_id=receipt_id)
    raise DestinationWriteError(f"Notion rejected the request: {message}", receipt_id=receipt_id, retryable=False)


class NotionOAuthClient:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id or settings.NOTION_CLIENT_ID or ""
        self.client_secret = client_secret or settings.NOTION_CLIENT_SECRET or ""
        self._transport = transport

    @property
    def redirect_uri(self) -> str:
        return f"{settings.APP_BASE_URL.rstrip('/')}{settings.API_V1_STR}/callback/notion"

    def _client(self) -> httpx.AsyncClient:
        # one client per call; see GoogleOAuthClient
        return httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0), transport=self._transport)

    def build_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "owner": "user",
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{NOTION_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> tuple[OAuthGrant, NotionConnectionMetadata]:
        try:
            async with self._client() as http:
                resp = await http.post(
                    f"{NOTION_API_ROOT}/oauth/token",
                    auth=(self.client_id, self.client_secret),
                    headers={"Notion-Version": NOTION_VERSION},
                    json={"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_uri},
                )
        except httpx.HTTPError as exc:
            raise FetchError(f"Notion token request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise FetchError("Notion token exchange failed", upstream_status=resp.status_code)
        body = resp.json()
        owner_user = ((body.get("owner") or {}).get("user") or {}) if isinstance(body.get("owner"), dict) else {}
        metadata = NotionConnectionMetadata(
            workspace_id=body.get("workspace_id", ""),
            workspace_name=body.get("workspace_name"),
            workspace_icon=body.get("workspace_icon"),
            bot_id=body.get("bot_id"),
            owner_user_id=owner_user.get("id"),
        )
        # Notion access tokens do not expire; the token itself is the stored credential
        grant = OAuthGrant(credential=body["access_token"], access_token=body["access_token"], scopes="", expires_at=None)
        return grant, metadata


class NotionClient:
    def __init__(self, access_token: str, http: Optional[httpx.AsyncClient] = None) -> None:
        self._token = access_token
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=5.0))

    async def _request(self, method: str, path: str, *, receipt_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token}", "Notion-Version": NOTION_VERSION}
        try:
            resp = await self._http.request(method, f"{NOTION_API_ROOT}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise DestinationWriteError(f"Notion request failed: {exc}", receipt_id=receipt_id) from exc
        _raise_for_notion(resp, receipt_id)
        try:
            return resp.json()
        except ValueError as exc:
            raise DestinationWriteError("Notion returned an invalid response", receipt_id=receipt_id) from exc

    async def search_databases(self, query: Optional[str] = None, start_cursor: Optional[str] = None) -> Dict[str, Any]:
        """Databases shared with the integration, one page of results."""
        body: Dict[str, Any] = {"filter": {"property": "object", "value": "database"}, "page_size": 100}
        if query:
            body["query"] = query
        if start_cursor:
            body["start_cursor"] = start_cursor
        return await self._request("POST", "/search", json=body)

    async def retrieve_database(self, database_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/databases/{database_id}")

    async def query_database(self, database_id: str, filter_: Dict[str, Any], **kw) -> Dict[str, Any]:
        return await self._request("POST", f"/databases/{database_id}/query", json={"filter": filter_, "page_size": 1}, **kw)

    async def create_page(self, database_id: str, properties: Dict[str, Any], **kw) -> Dict[str, Any]:
        return await self._request(
            "POST", "/pages", json={"parent": {"database_id": database_id}, "properties": properties}, **kw
        )

    async def update_page(self, page_id: str, properties: Dict[str, Any], **kw) -> Dict[str, Any]:
        return await self._request("PATCH", f"/pages/{page_id}", json={"properties": properties}, **kw)

    async def aclose(self) -> None:
        await self._http.aclose()


class NotionWriter:
    """Upserts receipts as pages of one Notion database."""

    def __init__(self, config: NotionConfiguration, client: NotionClient) -> None:
        self.config = config
        self.client = client
        self._schema: Optional[Dict[str, Dict[str, Any]]] = None

    async def _properties(self) -> Dict[str, Dict[str, Any]]:
        """Database properties keyed by name."""
        if self._schema is None:
            db = await self.client.retrieve_database(self.config.database_id)
            self._schema = {name: prop for name, prop in (db.get("properties") or {}).items()}
        return self._schema

    @staticmethod
    def _find(schema: Dict[str, Dict[str, Any]], ref: str) -> Optional[tuple[str, Dict[str, Any]]]:
        if ref in schema:
            return ref, schema[ref]
        for name, prop in schema.items():
            if prop.get("id") == ref:
                return name, prop
        return None

    async def build_properties(self, receipt: Receipt) -> Dict[str, Any]:
        schema = await self._properties()
        mapping = dict(self.config.field_mapping or DEFAULT_NOTION_PROPERTIES)
        if RECEIPT_ID_PROPERTY in schema:
            mapping.setdefault("id", RECEIPT_ID_PROPERTY)
        out: Dict[str, Any] = {}
        has_title = False
        for key, ref in mapping.items():
            found = self._find(schema, ref)
            if found is None:
                continue
            name, prop = found
            rendered = to_property_value(prop.get("type", "rich_text"), receipt_field_value(receipt, key))
            if rendered is None:
                continue
            out[name] = rendered
            has_title = has_title or prop.get("type") == "title"
        if not has_title:
            title_name = next((n for n, p in schema.items() if p.get("type") == "title"), None)
            if title_name:
                out[title_name] = {"title": _text(receipt.vendor or f"Receipt {receipt.id}")}
        return out

    async def _find_existing(self, receipt: Receipt) -> Optional[str]:
        schema = await self._properties()
        prop = schema.get(RECEIPT_ID_PROPERTY)
        if prop is None:
            return None
        kind = "title" if prop.get("type") == "title" else "rich_text"
        data = await self.client.query_database(
            self.config.database_id,
            {"property": RECEIPT_ID_PROPERTY, kind: {"equals": receipt.id}},
            receipt_id=receipt.id,
        )
        results = data.get("results") or []
        return results[0].get("id") if results else None

    async def upsert(self, receipt: Receipt, external_id: Optional[str] = None) -> str:
        properties = await self.build_properties(receipt)
        page_id = external_id or await self._find_existing(receipt)
        if page_id:
            try:
                await self.client.update_page(page_id, properties, receipt_id=receipt.id)
                return page_id
            except NotionObjectNotFound:
                # page deleted in Notion; recreate it
                logger.info("[notion] page %s gone; recreating receipt=%s", page_id, receipt.id)
        page = await self.client.create_page(self.config.database_id, properties, receipt_id=receipt.id)
        if not page.get("id"):
            raise DestinationWriteError("Notion did not return a page id", receipt_id=receipt.id)
        return page["id"]

    async def aclose(self) -> None:
        await self.client.aclose()


__all__ = [
    "NotionOAuthClient",
    "NotionClient",
    "NotionWriter",
    "NotionObjectNotFound",
    "to_property_value",
    "receipt_field_value",
    "DEFAULT_NOTION_PROPERTIES",
    "RECEIPT_ID_PROPERTY",
    "NOTION_VERSION",
]
