"""Google Sheets destination writer.

Rows are upserted idempotently: each (destination, receipt) pair maps to
a stable developer-metadata id attached to the row it was appended to.
Re-syncing a receipt finds the row through that metadata and rewrites it
in place instead of appending a duplicate.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from receiptsync.core.errors import DestinationWriteError, FetchError, ReauthRequiredError
from receiptsync.models.enums import ExportColumn
from receiptsync.models.schemas import GoogleSheetsConfiguration
from receiptsync.models.tables import Receipt
from receiptsync.services.export_service import column_value

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4"

DEFAULT_SHEET_COLUMNS: List[ExportColumn] = [
    ExportColumn.DATE,
    ExportColumn.VENDOR,
    ExportColumn.AMOUNT,
    ExportColumn.CURRENCY,
    ExportColumn.CATEGORY,
    ExportColumn.TAX_AMOUNT,
    ExportColumn.SUBTOTAL,
    ExportColumn.PAYMENT_METHOD,
    ExportColumn.RECEIPT_NUMBER,
    ExportColumn.NOTES,
    ExportColumn.RECEIPT_IMAGE_URL,
]

_ROW_RE = re.compile(r":[A-Z]*(\d+)$")

AccessTokenGetter = Callable[[], Awaitable[str]]


def metadata_id_for(destination_id: str, receipt_id: str) -> int:
    """Positive 31-bit id derived from SHA-256 of ``destination_id:receipt_id``."""
    digest = hashlib.sha256(f"{destination_id}:{receipt_id}".encode("utf-8")).digest()
    value = int.from_bytes(digest[:4], "big") & 0x7FFFFFFF
    return value or 1


def column_letter(index: int) -> str:
    """1-based column index to A1 letters (1 -> A, 27 -> AA)."""
    letters = ""
    while index > 0:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def row_from_range(updated_range: str) -> Optional[int]:
    m = _ROW_RE.search(updated_range or "")
    return int(m.group(1)) if m else None


def receipt_to_row(receipt: Receipt, columns: Sequence[ExportColumn]) -> List[Any]:
    return [column_value(receipt, c) or "" for c in columns]


class GoogleSheetsClient:
    """Minimal Sheets v4 client; status codes are mapped to domain errors."""

    def __init__(self, get_access_token: AccessTokenGetter, http: Optional[httpx.AsyncClient] = None) -> None:
        self._get_access_token = get_access_token
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=5.0))

    async def _request(self, method: str, path: str, *, receipt_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        try:
            token = await self._get_access_token()
        except FetchError as exc:
            raise DestinationWriteError(
                f"Could not obtain a Google access token: {exc.message}", receipt_id=receipt_id
            ) from exc
        headers = {"Authorization": f"Bearer {token}"}
        try:
            resp = await self._http.request(method, f"{SHEETS_API_BASE}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise DestinationWriteError(f"Google Sheets request failed: {exc}", receipt_id=receipt_id) from exc
        if resp.status_code == 401:
            raise ReauthRequiredError("Google Sheets rejected the access token")
        if resp.status_code == 403:
            # one inaccessible spreadsheet does not invalidate the connection
            raise DestinationWriteError("Access to the spreadsheet was denied", receipt_id=receipt_id, retryable=False)
        if resp.status_code == 404:
            raise DestinationWriteError("Spreadsheet not found", receipt_id=receipt_id, retryable=False)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise DestinationWriteError(
                f"Google Sheets temporarily unavailable (HTTP {resp.status_code})", receipt_id=receipt_id
            )
        if resp.status_code >= 400:
            raise DestinationWriteError(
                f"Google Sheets rejected the request (HTTP {resp.status_code})", receipt_id=receipt_id, retryable=False
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise DestinationWriteError("Google Sheets returned an invalid response", receipt_id=receipt_id) from exc

    async def get_spreadsheet(self, spreadsheet_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/spreadsheets/{spreadsheet_id}")

    async def append_values(self, spreadsheet_id: str, range_: str, values: List[List[Any]], **kw) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/spreadsheets/{spreadsheet_id}/values/{range_}:append",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": values},
            **kw,
        )

    async def update_values(self, spreadsheet_id: str, range_: str, values: List[List[Any]], **kw) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"/spreadsheets/{spreadsheet_id}/values/{range_}",
            params={"valueInputOption": "USER_ENTERED"},
            json={"values": values},
            **kw,
        )

    async def batch_update(self, spreadsheet_id: str, requests: List[Dict[str, Any]], **kw) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/spreadsheets/{spreadsheet_id}:batchUpdate", json={"requests": requests}, **kw
        )

    async def search_developer_metadata(self, spreadsheet_id: str, metadata_id: int, **kw) -> List[Dict[str, Any]]:
        body = {
            "dataFilters": [
                {
                    "developerMetadataLookup": {
                        "metadataId": metadata_id,
                        "locationType": "ROW",
                        "visibility": "DOCUMENT",
                    }
                }
            ]
        }
        data = await self._request(
            "POST", f"/spreadsheets/{spreadsheet_id}/developerMetadata:search", json=body, **kw
        )
        return data.get("matchedDeveloperMetadata") or []

    async def aclose(self) -> None:
        await self._http.aclose()


class GoogleSheetsWriter:
    """Upserts receipts as rows of one sheet."""

    def __init__(self, destination_id: str, config: GoogleSheetsConfiguration, client: GoogleSheetsClient) -> None:
        self.destination_id = destination_id
        self.config = config
        self.client = client
        self.columns: List[ExportColumn] = list(config.field_mapping or DEFAULT_SHEET_COLUMNS)
        self._sheet: Optional[Dict[str, Any]] = None

    async def _resolve_sheet(self) -> Dict[str, Any]:
        if self._sheet is not None:
            return self._sheet
        spreadsheet = await self.client.get_spreadsheet(self.config.spreadsheet_id)
        sheets = [s.get("properties", {}) for s in spreadsheet.get("sheets", [])]
        if not sheets:
            raise DestinationWriteError("Spreadsheet has no sheets", retryable=False)
        wanted = self.config.sheet_id
        match = sheets[0] if wanted is None else next((s for s in sheets if s.get("sheetId") == wanted), None)
        if match is None:
            raise DestinationWriteError("Sheet not found", retryable=False)
        self._sheet = match
        return match

    async def upsert(self, receipt: Receipt, external_id: Optional[str] = None) -> str:
        sheet = await self._resolve_sheet()
        title = sheet.get("title", "Sheet1")
        sheet_id = sheet.get("sheetId", 0)
        last_col = column_letter(len(self.columns))
        metadata_id = metadata_id_for(self.destination_id, receipt.id)
        row = receipt_to_row(receipt, self.columns)
        sid = self.config.spreadsheet_id

        matches = await self.client.search_developer_metadata(sid, metadata_id, receipt_id=receipt.id)
        if matches:
            dim = (matches[0].get("developerMetadata", {}).get("location", {}) or {}).get("dimensionRange") or {}
            if "startIndex" in dim:
                row_number = int(dim["startIndex"]) + 1
                await self.client.update_values(
                    sid, f"{title}!A{row_number}:{last_col}{row_number}", [row], receipt_id=receipt.id
                )
                logger.debug("[sheets] updated row=%s receipt=%s", row_number, receipt.id)
                return str(metadata_id)

        result = await self.client.append_values(sid, f"{title}!A:{last_col}", [row], receipt_id=receipt.id)
        row_number = row_from_range((result.get("updates") or {}).get("updatedRange", ""))
        if row_number:
            await self.client.batch_update(
                sid,
                [
                    {
                        "createDeveloperMetadata": {
                            "developerMetadata": {
                                "metadataId": metadata_id,
                                "location": {
                                    "dimensionRange": {
                                        "sheetId": sheet_id,
                                        "dimension": "ROWS",
                                        "startIndex": row_number - 1,
                                        "endIndex": row_number,
                                    }
                                },
                                "visibility": "DOCUMENT",
                            }
                        }
                    }
                ],
                receipt_id=receipt.id,
            )
        logger.debug("[sheets] appended row=%s receipt=%s", row_number, receipt.id)
        return str(metadata_id)

    async def aclose(self) -> None:
        await self.client.aclose()


__all__ = [
    "GoogleSheetsClient",
    "GoogleSheetsWriter",
    "metadata_id_for",
    "column_letter",
    "row_from_range",
    "receipt_to_row",
    "DEFAULT_SHEET_COLUMNS",
]
