from __future__ import annotations

import pytest

from receiptsync.core.errors import (
    DestinationConfigError,
    InvalidTransitionError,
    LimitExceededError,
    NotFoundError,
    ReauthRequiredError,
)
from receiptsync.models.enums import ConnectionType, DestinationStatus, DestinationType, PlanType
from receiptsync.models.schemas import GoogleSheetsConfiguration, NotionConfiguration
from receiptsync.models.tables import Organisation
from receiptsync.services.connection_service import connection_service
from receiptsync.services.destination_service import DestinationService, validate_destination_config
from receiptsync.services.google_oauth import GOOGLE_REQUIRED_SCOPES

GOOGLE_META = {
    "scopes": " ".join(sorted(GOOGLE_REQUIRED_SCOPES)),
    "owner_email": "o@example.com",
    "owner_google_user_id": "g-1",
}


async def _setup(session, plan=PlanType.FREE):
    org = Organisation(name="Acme", plan=plan)
    session.add(org)
    await session.commit()
    google = await connection_service.create(session, org.id, ConnectionType.GOOGLE, "rt", GOOGLE_META)
    notion = await connection_service.create(session, org.id, ConnectionType.NOTION, "tok", {"workspace_id": "ws"})
    return org, google, notion


def test_config_validation_accepts_camel_and_snake_case():
    sheets = validate_destination_config("google_sheets", {"spreadsheetId": "abc", "sheetId": 0})
    assert isinstance(sheets, GoogleSheetsConfiguration)
    assert sheets.spreadsheet_id == "abc"
    notion = validate_destination_config(DestinationType.NOTION, {"database_id": "db"})
    assert isinstance(notion, NotionConfiguration)


@pytest.mark.parametrize(
    "dest_type,configuration,fragment",
    [
        ("dropbox", {}, "Unknown destination type: dropbox"),
        ("google_sheets", {}, "Invalid google_sheets configuration"),
        ("google_sheets", {"spreadsheetId": "abc", "extra": 1}, "extra"),
        ("notion", {"databaseId": ""}, "databaseId"),
        ("google_sheets", {"spreadsheetId": "abc", "fieldMapping": ["NOT_A_COLUMN"]}, "fieldMapping"),
    ],
)
def test_config_validation_rejects_bad_shapes(dest_type, configuration, fragment):
    with pytest.raises(DestinationConfigError) as exc_info:
        validate_destination_config(dest_type, configuration)
    assert fragment in exc_info.value.message


@pytest.mark.asyncio
async def test_create_checks_connection_type_and_plan(session_factory):
    svc = DestinationService()
    async with session_factory() as session:
        org, google, notion = await _setup(session)
        with pytest.raises(DestinationConfigError):
            await svc.create_destination(session, org.id, "notion", "Ledger", {"databaseId": "db"}, google.id)

        dest = await svc.create_destination(session, org.id, "notion", "Ledger", {"databaseId": "db"}, notion.id)
        assert dest.status == DestinationStatus.RUNNING
        assert dest.configuration == {"database_id": "db"}

        # free plan allows a single destination
        with pytest.raises(LimitExceededError):
            await svc.create_destination(
                session, org.id, "google_sheets", "Sheet", {"spreadsheetId": "s"}, google.id
            )


@pytest.mark.asyncio
async def test_create_requires_active_connection_in_same_org(session_factory):
    svc = DestinationService()
    async with session_factory() as session:
        org, _, notion = await _setup(session, plan=PlanType.PRO)
        other = Organisation(name="Other", plan=PlanType.PRO)
        session.add(other)
        await session.commit()
        with pytest.raises(NotFoundError):
            await svc.create_destination(session, other.id, "notion", None, {"databaseId": "db"}, notion.id)

        await connection_service.mark_needs_reauth(session, notion.id, "unauthorized")
        with pytest.raises(ReauthRequiredError):
            await svc.create_destination(session, org.id, "notion", None, {"databaseId": "db"}, notion.id)


@pytest.mark.asyncio
async def test_pause_resume_and_archive(session_factory):
    svc = DestinationService()
    async with session_factory() as session:
        org, google, _ = await _setup(session, plan=PlanType.PRO)
        dest = await svc.create_destination(session, org.id, "google_sheets", "S", {"spreadsheetId": "s"}, google.id)

        paused = await svc.update_destination(session, org.id, dest.id, status=DestinationStatus.PAUSED)
        assert paused.status == DestinationStatus.PAUSED
        assert [d.id for d in await svc.list_running(session, org.id)] == []

        resumed = await svc.update_destination(
            session, org.id, dest.id, status=DestinationStatus.RUNNING, configuration={"spreadsheetId": "s2"}
        )
        assert resumed.configuration == {"spreadsheet_id": "s2"}

        with pytest.raises(DestinationConfigError):
            await svc.update_destination(session, org.id, dest.id, configuration={"spreadsheetId": ""})
        assert dest.configuration == {"spreadsheet_id": "s2"}

        await svc.archive_destination(session, org.id, dest.id)
        with pytest.raises(NotFoundError):
            await svc.update_destination(session, org.id, dest.id, name="again")
        with pytest.raises(InvalidTransitionError):
            await svc.archive_destination(session, org.id, dest.id)

        assert await svc.list_destinations(session, org.id) == []
        assert len(await svc.list_destinations(session, org.id, include_archived=True)) == 1
