"""Plan usage and admission decisions for the current organisation."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.api.dependencies import get_db_session, get_org
from receiptsync.models.schemas import LimitCheckResponse, UsageResponse
from receiptsync.models.tables import Organisation
from receiptsync.services.admission_service import admission_service

router = APIRouter(tags=["limits"])


@router.get("/limits", response_model=UsageResponse)
async def get_limits(
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> UsageResponse:
    usage = await admission_service.get_usage(db, org.id)
    receipt_check = await admission_service.can_add_receipt(db, org.id)
    destination_check = await admission_service.can_add_destination(db, org.id)
    return UsageResponse(
        **asdict(usage),
        warning_level=admission_service.warning_level(usage),
        upgrade_message=admission_service.upgrade_prompt(usage),
        can_add_receipt=LimitCheckResponse(**asdict(receipt_check)),
        can_add_destination=LimitCheckResponse(**asdict(destination_check)),
    )
