from __future__ import annotations

import datetime as dt
import json

import httpx
import pytest

from receiptsync.core.errors import DestinationWriteError, FetchError, ReauthRequiredError
from receiptsync.models.enums import ReceiptStatus
from receiptsync.models.schemas import GoogleSheetsConfiguration, NotionConfiguration
from receiptsync.models.tables import Receipt
from receiptsync.services.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsWriter,
    column_letter,
    metadata_id_for,
    row_from_range,
)
from receiptsync.services.notion_client import NotionClient, NotionObjectNotFound, NotionWriter, to_property_value


def _receipt():
    return Receipt(
        id="r1",
        org_id="o",
        status=ReceiptStatus.EXTRACTED,
        original_image_key="orgs/o/r1.jpg",
        vendor="Blue Bottle",
        amount=12.5,
        currency="USD",
        receipt_date=dt.date(2024, 3, 5),
    )


async def _token():
    return "access-1"


SPREADSHEET = {"sheets": [{"properties": {"sheetId": 7, "title": "Sheet1"}}]}


def test_sheet_helpers():
    assert column_letter(1) == "A"
    assert column_letter(11) == "K"
    assert column_letter(27) == "AA"
    assert row_from_range("Sheet1!A12:K12") == 12
    assert row_from_range("") is None
    mid = metadata_id_for("d1", "r1")
    assert mid == metadata_id_for("d1", "r1")
    assert 0 < mid < 2**31
    assert mid != metadata_id_for("d2", "r1")


@pytest.mark.asyncio
async def test_sheets_appends_and_tags_new_rows():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        assert request.headers["Authorization"] == "Bearer access-1"
        if request.method == "GET":
            return httpx.Response(200, json=SPREADSHEET)
        if request.url.path.endswith("developerMetadata:search"):
            return httpx.Response(200, json={})
        if request.url.path.endswith(":append"):
            body = json.loads(request.content)
            assert body["values"][0][:3] == ["2024-03-05", "Blue Bottle", "12.50"]
            return httpx.Response(200, json={"updates": {"updatedRange": "Sheet1!A5:K5"}})
        if request.url.path.endswith(":batchUpdate"):
            body = json.loads(request.content)
            meta = body["requests"][0]["createDeveloperMetadata"]["developerMetadata"]
            assert meta["location"]["dimensionRange"] == {
                "sheetId": 7,
                "dimension": "ROWS",
                "startIndex": 4,
                "endIndex": 5,
            }
            return httpx.Response(200, json={})
        return httpx.Response(500)

    client = GoogleSheetsClient(_token, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    writer = GoogleSheetsWriter("d1", GoogleSheetsConfiguration(spreadsheet_id="sid"), client)
    external_id = await writer.upsert(_receipt())
    await writer.aclose()

    assert external_id == str(metadata_id_for("d1", "r1"))
    assert [m for m, _ in calls] == ["GET", "POST", "POST", "POST"]


@pytest.mark.asyncio
async def test_sheets_rewrites_tagged_row_in_place():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append((request.method, request.url.path))
        if request.method == "GET":
            return httpx.Response(200, json=SPREADSHEET)
        if request.url.path.endswith("developerMetadata:search"):
            return httpx.Response(
                200,
                json={
                    "matchedDeveloperMetadata": [
                        {"developerMetadata": {"location": {"dimensionRange": {"startIndex": 9}}}}
                    ]
                },
            )
        if request.method == "PUT":
            return httpx.Response(200, json={})
        return httpx.Response(500)

    client = GoogleSheetsClient(_token, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    writer = GoogleSheetsWriter("d1", GoogleSheetsConfiguration(spreadsheet_id="sid"), client)
    await writer.upsert(_receipt())
    await writer.aclose()

    assert paths[-1] == ("PUT", "/v4/spreadsheets/sid/values/Sheet1!A10:K10")
    assert not any(p.endswith(":append") for _, p in paths)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,exc_type,retryable",
    [
        (401, ReauthRequiredError, False),
        (403, DestinationWriteError, False),
        (404, DestinationWriteError, False),
        (429, DestinationWriteError, True),
        (503, DestinationWriteError, True),
        (400, DestinationWriteError, False),
    ],
)
async def test_sheets_status_mapping(status, exc_type, retryable):
    transport = httpx.MockTransport(lambda request: httpx.Response(status, json={}))
    client = GoogleSheetsClient(_token, http=httpx.AsyncClient(transport=transport))
    with pytest.raises(exc_type) as exc_info:
        await client.get_spreadsheet("sid")
    await client.aclose()
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_sheets_network_failure_is_retryable():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    client = GoogleSheetsClient(_token, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(DestinationWriteError) as exc_info:
        await client.get_spreadsheet("sid")
    await client.aclose()
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_sheets_token_refresh_failure_is_a_retryable_write_error():
    async def failing_token():
        raise FetchError("Google token request failed: 503", upstream_status=503)

    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    client = GoogleSheetsClient(failing_token, http=httpx.AsyncClient(transport=transport))
    with pytest.raises(DestinationWriteError) as exc_info:
        await client.get_spreadsheet("sid")
    await client.aclose()
    assert exc_info.value.retryable
    assert "503" in exc_info.value.message


@pytest.mark.asyncio
async def test_sheets_invalid_json_is_a_write_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
    client = GoogleSheetsClient(_token, http=httpx.AsyncClient(transport=transport))
    with pytest.raises(DestinationWriteError):
        await client.get_spreadsheet("sid")
    await client.aclose()


def test_notion_property_rendering():
    assert to_property_value("number", "12.5") == {"number": 12.5}
    assert to_property_value("number", "n/a") is None
    assert to_property_value("date", "2024-03-05T10:00:00") == {"date": {"start": "2024-03-05"}}
    assert to_property_value("select", "food") == {"select": {"name": "food"}}
    assert to_property_value("formula", "x") is None
    assert to_property_value("rich_text", None) is None
    assert to_property_value("people", "x")["rich_text"][0]["text"]["content"] == "x"


DATABASE = {
    "properties": {
        "Name": {"id": "title", "type": "title"},
        "Amount": {"id": "amt", "type": "number"},
        "Date": {"id": "dt", "type": "date"},
        "Receipt ID": {"id": "rid", "type": "rich_text"},
        "Total": {"id": "tot", "type": "formula"},
    }
}


def _notion_handler(requests, existing=None, gone=()):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        requests.append((request.method, request.url.path, body))
        assert request.headers["Notion-Version"]
        if request.method == "GET":
            return httpx.Response(200, json=DATABASE)
        if request.url.path.endswith("/query"):
            results = [{"id": existing}] if existing else []
            return httpx.Response(200, json={"results": results})
        if request.method == "PATCH":
            page_id = request.url.path.rsplit("/", 1)[-1]
            if page_id in gone:
                return httpx.Response(404, json={"code": "object_not_found", "message": "gone"})
            return httpx.Response(200, json={"id": page_id})
        if request.method == "POST" and request.url.path == "/v1/pages":
            return httpx.Response(200, json={"id": "page-new"})
        return httpx.Response(500, json={})

    return handler


def _writer(handler, field_mapping=None):
    client = NotionClient("tok", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return NotionWriter(NotionConfiguration(database_id="db", field_mapping=field_mapping), client)


@pytest.mark.asyncio
async def test_notion_creates_page_with_schema_aware_properties():
    requests = []
    writer = _writer(_notion_handler(requests), field_mapping={"vendor": "Name", "amount": "amt", "date": "Date"})
    page_id = await writer.upsert(_receipt())
    await writer.aclose()

    assert page_id == "page-new"
    create = requests[-1]
    props = create[2]["properties"]
    assert create[2]["parent"] == {"database_id": "db"}
    assert props["Name"] == {"title": [{"type": "text", "text": {"content": "Blue Bottle"}}]}
    assert props["Amount"] == {"number": 12.5}
    assert props["Date"] == {"date": {"start": "2024-03-05"}}
    assert props["Receipt ID"]["rich_text"][0]["text"]["content"] == "r1"
    assert "Total" not in props


@pytest.mark.asyncio
async def test_notion_updates_known_page_and_recreates_deleted_one():
    requests = []
    writer = _writer(_notion_handler(requests, existing="page-1"))
    assert await writer.upsert(_receipt()) == "page-1"
    assert requests[-1][0] == "PATCH"

    requests.clear()
    writer = _writer(_notion_handler(requests, gone={"page-old"}))
    assert await writer.upsert(_receipt(), external_id="page-old") == "page-new"
    assert [r[0] for r in requests] == ["GET", "PATCH", "POST"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,exc_type,retryable",
    [
        (401, {"code": "unauthorized", "message": "bad token"}, ReauthRequiredError, False),
        (403, {"code": "restricted_resource", "message": "no access"}, ReauthRequiredError, False),
        (404, {"code": "object_not_found", "message": "gone"}, NotionObjectNotFound, False),
        (429, {"code": "rate_limited", "message": "slow down"}, DestinationWriteError, True),
        (400, {"code": "validation_error", "message": "bad"}, DestinationWriteError, False),
    ],
)
async def test_notion_error_mapping(status, body, exc_type, retryable):
    transport = httpx.MockTransport(lambda request: httpx.Response(status, json=body))
    client = NotionClient("tok", http=httpx.AsyncClient(transport=transport))
    with pytest.raises(exc_type) as exc_info:
        await client.retrieve_database("db")
    await client.aclose()
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_notion_create_without_page_id_is_a_write_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=DATABASE)
        if request.url.path.endswith("/query"):
            return httpx.Response(200, json={"results": []})
        return httpx.Response(200, json={"object": "page"})

    writer = _writer(handler)
    with pytest.raises(DestinationWriteError) as exc_info:
        await writer.upsert(_receipt())
    await writer.aclose()
    assert exc_info.value.receipt_id == "r1"


@pytest.mark.asyncio
async def test_notion_search_lists_shared_databases():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"results": [{"id": "db-1"}], "has_more": False, "next_cursor": None})

    client = NotionClient("tok", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    data = await client.search_databases(query="Receipts")
    await client.aclose()
    assert data["results"] == [{"id": "db-1"}]
    path, body = bodies[0]
    assert path == "/v1/search"
    assert body["filter"] == {"property": "object", "value": "database"}
    assert body["query"] == "Receipts"
    assert "start_cursor" not in body
