"""Direct extraction: read a receipt image without storing it."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.api.dependencies import get_db_session, get_org
from receiptsync.models.schemas import DirectExtractRequest, DirectExtractResponse
from receiptsync.models.tables import Organisation
from receiptsync.services import direct_extraction
from receiptsync.services.fingerprint import ContentSource

router = APIRouter(tags=["extract"])


@router.post("/extract", response_model=DirectExtractResponse)
async def extract_receipt(
    body: DirectExtractRequest,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> DirectExtractResponse:
    if body.image_url:
        source = ContentSource(url=body.image_url)
    else:
        source = ContentSource(base64=body.image_base64)
    result = await direct_extraction.extract_direct(
        db, org.id, source, media_type=body.media_type, skip_cache=body.skip_cache
    )
    return DirectExtractResponse(
        cached=result.cached,
        existing_receipt_id=result.existing_receipt_id,
        data=result.data,
        confidence_score=result.confidence_score,
        processing_time_ms=result.processing_time_ms,
        image_hash=result.image_hash,
    )
