"""File export routes.

Small exports are rendered inside the request and returned as a file
download; large ones are handed to the worker and polled through
``GET /exports/{job_id}``.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.api.dependencies import get_db_session, get_org
from receiptsync.core.errors import NotFoundError
from receiptsync.models.enums import ExportJobStatus
from receiptsync.models.schemas import AcceptedResponse, ExportJobResponse, ExportRequest
from receiptsync.models.tables import ExportJob, Organisation
from receiptsync.services.export_service import ReceiptFilter
from receiptsync.services.sync_service import QueuedJob, sync_service

router = APIRouter(tags=["exports"])


@router.post("/receipts/export")
async def export_receipts(
    body: ExportRequest,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
):
    flt = ReceiptFilter.from_request(body.filters)
    routed = await sync_service.route_export(db, org, body.format, body.columns, flt)
    if isinstance(routed, QueuedJob):
        accepted = AcceptedResponse(receipt_count=routed.receipt_count, job_id=routed.job_id)
        return JSONResponse(status_code=202, content=accepted.model_dump(by_alias=True))
    return Response(
        content=routed.body,
        media_type=routed.content_type,
        headers={"Content-Disposition": f'attachment; filename="{routed.filename}"'},
    )


@router.get("/exports/{job_id}", response_model=ExportJobResponse)
async def get_export_job(
    job_id: str,
    db: AsyncSession = Depends(get_db_session),
    org: Organisation = Depends(get_org),
) -> ExportJobResponse:
    job = await db.get(ExportJob, job_id)
    if job is None or job.org_id != org.id:
        raise NotFoundError("Export job not found")
    out = ExportJobResponse.model_validate(job)
    if job.status == ExportJobStatus.COMPLETED and job.result_key:
        out.download_url = await asyncio.to_thread(sync_service.storage.presigned_download_url, job.result_key)
    return out
