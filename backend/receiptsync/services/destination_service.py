"""Destination management.

A destination pairs a connection with a provider-specific target (a
spreadsheet, a Notion database).  Its ``configuration`` is a tagged
union keyed by destination type and is validated through
``DESTINATION_SPEC_ADAPTER`` whenever it is written, so the sync code
can rely on a well-formed shape.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.errors import DestinationConfigError, NotFoundError, ReauthRequiredError
from receiptsync.models.enums import ConnectionStatus, DestinationStatus, DestinationType
from receiptsync.models.schemas import (
    DESTINATION_SPEC_ADAPTER,
    GoogleSheetsConfiguration,
    NotionConfiguration,
)
from receiptsync.models.tables import Connection, Destination
from receiptsync.models.transitions import check_transition, transition
from receiptsync.services.admission_service import admission_service

logger = logging.getLogger(__name__)

DestinationConfiguration = Union[GoogleSheetsConfiguration, NotionConfiguration]


def validate_destination_config(dest_type: Union[str, DestinationType], configuration: Dict[str, Any]) -> DestinationConfiguration:
    """Validate ``configuration`` for ``dest_type``; unknown types are rejected."""
    type_value = getattr(dest_type, "value", dest_type)
    try:
        DestinationType(type_value)
    except ValueError as exc:
        raise DestinationConfigError(f"Unknown destination type: {type_value}") from exc
    try:
        spec = DESTINATION_SPEC_ADAPTER.validate_python({"type": type_value, "configuration": configuration or {}})
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p not in ("configuration", type_value))
        raise DestinationConfigError(
            f"Invalid {type_value} configuration: {where + ': ' if where else ''}{first['msg']}"
        ) from exc
    return spec.configuration


def parse_configuration(destination: Destination) -> DestinationConfiguration:
    return validate_destination_config(destination.type, destination.configuration)


class DestinationService:
    async def get_destination(self, db: AsyncSession, org_id: str, destination_id: str) -> Destination:
        dest = await db.get(Destination, destination_id)
        if dest is None or dest.org_id != org_id:
            raise NotFoundError("Destination not found")
        return dest

    async def list_destinations(
        self, db: AsyncSession, org_id: str, include_archived: bool = False
    ) -> List[Destination]:
        stmt = select(Destination).where(Destination.org_id == org_id)
        if not include_archived:
            stmt = stmt.where(Destination.status != DestinationStatus.ARCHIVED)
        stmt = stmt.order_by(Destination.created_at.desc())
        return list((await db.execute(stmt)).scalars().all())

    async def list_running(self, db: AsyncSession, org_id: str) -> List[Destination]:
        stmt = select(Destination).where(
            Destination.org_id == org_id, Destination.status == DestinationStatus.RUNNING
        )
        return list((await db.execute(stmt)).scalars().all())

    async def _check_connection(
        self, db: AsyncSession, org_id: str, connection_id: str, dest_type: DestinationType
    ) -> Connection:
        conn = await db.get(Connection, connection_id)
        if conn is None or conn.org_id != org_id:
            raise NotFoundError("Connection not found")
        if conn.type != dest_type.connection_type:
            raise DestinationConfigError(
                f"A {dest_type.value} destination needs a {dest_type.connection_type.value} connection"
            )
        if conn.status != ConnectionStatus.ACTIVE:
            raise ReauthRequiredError("Connection must be re-authorised before use", connection_id=conn.id)
        return conn

    async def create_destination(
        self,
        db: AsyncSession,
        org_id: str,
        dest_type: Union[str, DestinationType],
        name: Optional[str],
        configuration: Dict[str, Any],
        connection_id: str,
    ) -> Destination:
        config = validate_destination_config(dest_type, configuration)
        dtype = DestinationType(getattr(dest_type, "value", dest_type))
        await self._check_connection(db, org_id, connection_id, dtype)
        (await admission_service.can_add_destination(db, org_id)).raise_if_denied()

        dest = Destination(
            org_id=org_id,
            type=dtype,
            status=DestinationStatus.RUNNING,
            name=name,
            configuration=config.model_dump(mode="json", exclude_none=True),
            connection_id=connection_id,
        )
        db.add(dest)
        await db.commit()
        await db.refresh(dest)
        logger.info("[destinations] created org=%s type=%s id=%s", org_id, dtype.value, dest.id)
        return dest

    async def update_destination(
        self,
        db: AsyncSession,
        org_id: str,
        destination_id: str,
        name: Optional[str] = None,
        configuration: Optional[Dict[str, Any]] = None,
        status: Optional[DestinationStatus] = None,
    ) -> Destination:
        dest = await self.get_destination(db, org_id, destination_id)
        if dest.status == DestinationStatus.ARCHIVED:
            raise NotFoundError("Destination not found")
        config = validate_destination_config(dest.type, configuration) if configuration is not None else None
        if status is not None and status != dest.status:
            check_transition("destination", dest.status, status)

        if name is not None:
            dest.name = name
        if config is not None:
            dest.configuration = config.model_dump(mode="json", exclude_none=True)
        if status is not None and status != dest.status:
            transition("destination", dest, status)
        await db.commit()
        await db.refresh(dest)
        return dest

    async def archive_destination(self, db: AsyncSession, org_id: str, destination_id: str) -> Destination:
        dest = await self.get_destination(db, org_id, destination_id)
        transition("destination", dest, DestinationStatus.ARCHIVED)
        await db.commit()
        logger.info("[destinations] archived org=%s id=%s", org_id, destination_id)
        return dest


destination_service = DestinationService()

__all__ = [
    "DestinationService",
    "destination_service",
    "validate_destination_config",
    "parse_configuration",
]
