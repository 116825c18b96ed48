"""Destination CRUD and manual sync routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.api.dependencies import get_db_session, get_org
from receiptsync.models.schemas import (
    AcceptedResponse,
    DestinationCreate,
    DestinationResponse,
    DestinationUpdate,
    SyncRequest,
    SyncResultResponse,
)
from receiptsync.models.tables import Organisation
from receiptsync.services.destination_service import destination_service
from receiptsync.services.export_service import ReceiptFilter
from receiptsync.services.sync_service import QueuedJob, sync_service

router = APIRouter(prefix="/destinations", tags=["destinations"])


@router.get("", response_model=List[DestinationResponse])
async def list_destinations(
    include_archived: bool = Query(default=False, alias="includeArchived"),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> List[DestinationResponse]:
    dests = await destination_service.list_destinations(db, org.id, include_archived=include_archived)
    return [DestinationResponse.model_validate(d) for d in dests]


@router.post("", response_model=DestinationResponse, status_code=201)
async def create_destination(
    body: DestinationCreate,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> DestinationResponse:
    dest = await destination_service.create_destination(
        db, org.id, body.type, body.name, body.configuration, body.connection_id
    )
    return DestinationResponse.model_validate(dest)


@router.get("/{destination_id}", response_model=DestinationResponse)
async def get_destination(
    destination_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> DestinationResponse:
    dest = await destination_service.get_destination(db, org.id, destination_id)
    return DestinationResponse.model_validate(dest)


@router.patch("/{destination_id}", response_model=DestinationResponse)
async def update_destination(
    destination_id: str,
    body: DestinationUpdate,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> DestinationResponse:
    dest = await destination_service.update_destination(
        db,
        org.id,
        destination_id,
        name=body.name,
        configuration=body.configuration,
        status=body.status,
    )
    return DestinationResponse.model_validate(dest)


@router.delete("/{destination_id}", response_model=DestinationResponse)
async def archive_destination(
    destination_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> DestinationResponse:
    dest = await destination_service.archive_destination(db, org.id, destination_id)
    return DestinationResponse.model_validate(dest)


@router.post("/{destination_id}/sync")
async def sync_destination(
    destination_id: str,
    body: Optional[SyncRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
):
    """Push the selected receipts now, or queue a job for large selections."""
    flt = ReceiptFilter.from_request(body.filters if body else None)
    routed = await sync_service.route_destination_sync(db, org.id, destination_id, flt)
    if isinstance(routed, QueuedJob):
        accepted = AcceptedResponse(receipt_count=routed.receipt_count, job_id=routed.job_id)
        return JSONResponse(status_code=202, content=accepted.model_dump(by_alias=True))
    result = SyncResultResponse(
        receipt_count=routed.receipt_count,
        succeeded=routed.succeeded,
        failed=routed.failed,
        error=routed.error,
    )
    return result.model_dump(by_alias=True)
