"""API routes for receipt upload, retrieval, correction and archival."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.api.dependencies import get_db_session, get_org
from receiptsync.core.observability import sentry_set_tags
from receiptsync.models.enums import ReceiptStatus
from receiptsync.models.schemas import (
    BulkArchiveRequest,
    BulkArchiveResponse,
    ConfirmUploadResponse,
    ReceiptResponse,
    ReceiptUpdate,
    UploadUrlRequest,
    UploadUrlResponse,
)
from receiptsync.models.tables import Organisation
from receiptsync.services.receipt_service import receipt_service

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(
    body: UploadUrlRequest,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> UploadUrlResponse:
    """Reserve a receipt and return a presigned PUT URL for the image."""
    sentry_set_tags({"org_id": org.id})
    receipt, upload_url = await receipt_service.create_upload(
        db, org.id, body.filename, body.content_type, body.size
    )
    return UploadUrlResponse(upload_url=upload_url, receipt_id=receipt.id, key=receipt.original_image_key)


@router.post("/{receipt_id}/confirm", response_model=ConfirmUploadResponse)
async def confirm_upload(
    receipt_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> ConfirmUploadResponse:
    receipt, message = await receipt_service.confirm_upload(db, org.id, receipt_id)
    return ConfirmUploadResponse(receipt_id=receipt.id, status=receipt.status, message=message)


@router.get("", response_model=List[ReceiptResponse])
async def list_receipts(
    status: Optional[List[ReceiptStatus]] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> List[ReceiptResponse]:
    receipts = await receipt_service.list_receipts(db, org.id, statuses=status, limit=limit, offset=offset)
    return [ReceiptResponse.model_validate(r) for r in receipts]


@router.get("/{receipt_id}", response_model=ReceiptResponse)
async def get_receipt(
    receipt_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> ReceiptResponse:
    receipt = await receipt_service.get_receipt(db, org.id, receipt_id)
    out = ReceiptResponse.model_validate(receipt)
    out.image_url = await asyncio.to_thread(
        receipt_service.storage.presigned_download_url, receipt.original_image_key
    )
    return out


@router.patch("/{receipt_id}", response_model=ReceiptResponse)
async def update_receipt(
    receipt_id: str,
    body: ReceiptUpdate,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> ReceiptResponse:
    updates = body.model_dump(exclude_unset=True)
    receipt = await receipt_service.update_receipt_fields(db, org.id, receipt_id, updates)
    return ReceiptResponse.model_validate(receipt)


@router.delete("/{receipt_id}", response_model=ReceiptResponse)
async def archive_receipt(
    receipt_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> ReceiptResponse:
    """Archive (never delete) a receipt; it stops counting as a duplicate."""
    receipt = await receipt_service.archive_receipt(db, org.id, receipt_id)
    return ReceiptResponse.model_validate(receipt)


@router.post("/bulk-archive", response_model=BulkArchiveResponse)
async def bulk_archive_receipts(
    body: BulkArchiveRequest,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> BulkArchiveResponse:
    archived = await receipt_service.archive_receipts(db, org.id, body.receipt_ids)
    return BulkArchiveResponse(archived=len(archived), receipt_ids=archived)
