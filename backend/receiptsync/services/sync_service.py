"""Export and live destination sync orchestration.

Small selections are handled inside the request: files are rendered and
returned directly and destination syncs run to completion.  Selections
larger than ``SYNC_EXPORT_THRESHOLD`` become an ``ExportJob`` that the
worker picks up through ``run_export_job``.

Live syncs write one receipt at a time.  A write failure for a single
receipt is recorded on its ``SyncedReceipt`` row and the batch moves on;
an authorization failure stops the batch because every remaining write
would fail the same way.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.config import settings
from receiptsync.core.errors import (
    DestinationConfigError,
    NotFoundError,
    ReauthRequiredError,
    ReceiptSyncError,
)
from receiptsync.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptsync.models.enums import (
    ConnectionStatus,
    DestinationStatus,
    DestinationType,
    ExportColumn,
    ExportFormat,
    ExportJobKind,
    ExportJobStatus,
    ReceiptStatus,
    SyncedReceiptStatus,
)
from receiptsync.models.tables import Destination, ExportJob, Organisation, Receipt, SyncedReceipt
from receiptsync.models.transitions import transition
from receiptsync.services.connection_service import DecryptedConnection, connection_service
from receiptsync.services.destination_service import destination_service, parse_configuration
from receiptsync.services.export_service import (
    ReceiptFilter,
    count_receipts,
    export_filename,
    fetch_receipts,
    render_export,
)
from receiptsync.services.google_oauth import GoogleTokenProvider, get_google_token_provider
from receiptsync.services.google_sheets import GoogleSheetsClient, GoogleSheetsWriter
from receiptsync.services.notion_client import NotionClient, NotionWriter
from receiptsync.services.storage_service import StorageService, export_object_key, get_storage
from receiptsync.utils.helpers import utcnow

logger = logging.getLogger(__name__)

Dispatch = Callable[[str], Any]

# Failed receipt ids listed in a destination's error summary
MAX_ERRORS_IN_SUMMARY = 5


class DestinationWriter(Protocol):
    async def upsert(self, receipt: Receipt, external_id: Optional[str] = None) -> str: ...

    async def aclose(self) -> None: ...


WriterFactory = Callable[[Destination, DecryptedConnection], DestinationWriter]


def build_writer(
    destination: Destination,
    connection: DecryptedConnection,
    token_provider: Optional[GoogleTokenProvider] = None,
) -> DestinationWriter:
    """Writer for ``destination`` authenticated with ``connection``'s credential."""
    config = parse_configuration(destination)
    if destination.type == DestinationType.GOOGLE_SHEETS:
        provider = token_provider or get_google_token_provider()

        async def _access_token() -> str:
            return await provider.access_token(connection.id, connection.credential)

        return GoogleSheetsWriter(destination.id, config, GoogleSheetsClient(_access_token))
    if destination.type == DestinationType.NOTION:
        return NotionWriter(config, NotionClient(connection.credential))
    raise DestinationConfigError(f"Unknown destination type: {destination.type}")


def _default_dispatch(job_id: str) -> None:
    from receiptsync.core.tasks import run_export_job as run_export_job_actor

    run_export_job_actor.send(job_id)


@dataclass
class SyncResult:
    receipt_count: int
    succeeded: int = 0
    failed: int = 0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class InlineExport:
    body: bytes
    content_type: str
    filename: str
    receipt_count: int


@dataclass
class QueuedJob:
    job_id: str
    receipt_count: int


def failure_summary(failed: int, total: int, errors: Sequence[str]) -> str:
    shown = "; ".join(errors[:MAX_ERRORS_IN_SUMMARY])
    more = len(errors) - MAX_ERRORS_IN_SUMMARY
    if more > 0:
        shown = f"{shown} (+{more} more)"
    return f"{failed} of {total} receipts failed to sync: {shown}"


def _error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


class SyncService:
    def __init__(
        self,
        storage: Optional[StorageService] = None,
        writer_factory: Optional[WriterFactory] = None,
    ) -> None:
        self._storage = storage
        self._writer_factory = writer_factory

    @property
    def storage(self) -> StorageService:
        return self._storage or get_storage()

    # --- Routing --------------------------------------------------------
    def _queue_job(
        self,
        db: AsyncSession,
        org_id: str,
        kind: ExportJobKind,
        count: int,
        flt: ReceiptFilter,
        columns: Optional[Sequence[ExportColumn]] = None,
        fmt: Optional[ExportFormat] = None,
        destination_id: Optional[str] = None,
    ) -> ExportJob:
        configuration: Dict[str, Any] = {"filters": flt.to_dict()}
        if columns is not None:
            configuration["columns"] = [c.value for c in columns]
        job = ExportJob(
            org_id=org_id,
            kind=kind,
            status=ExportJobStatus.QUEUED,
            format=fmt,
            destination_id=destination_id,
            configuration=configuration,
            receipt_count=count,
        )
        db.add(job)
        return job

    async def route_export(
        self,
        db: AsyncSession,
        org: Organisation,
        fmt: ExportFormat,
        columns: Sequence[ExportColumn],
        flt: ReceiptFilter,
        dispatch: Optional[Dispatch] = None,
    ) -> InlineExport | QueuedJob:
        count = await count_receipts(db, org.id, flt)
        if count > settings.SYNC_EXPORT_THRESHOLD:
            job = self._queue_job(db, org.id, ExportJobKind.FILE, count, flt, columns=columns, fmt=fmt)
            await db.commit()
            (dispatch or _default_dispatch)(job.id)
            logger.info("[exports] queued job=%s org=%s count=%d", job.id, org.id, count)
            return QueuedJob(job_id=job.id, receipt_count=count)

        receipts = await fetch_receipts(db, org.id, flt)
        if not receipts:
            raise NotFoundError("No receipts found matching the criteria")
        body, content_type, ext = render_export(receipts, columns, fmt)
        sentry_metric_inc("exports.inline", tags={"format": fmt.value})
        return InlineExport(
            body=body,
            content_type=content_type,
            filename=export_filename(org.name, flt, ext),
            receipt_count=len(receipts),
        )

    async def route_destination_sync(
        self,
        db: AsyncSession,
        org_id: str,
        destination_id: str,
        flt: ReceiptFilter,
        dispatch: Optional[Dispatch] = None,
    ) -> SyncResult | QueuedJob:
        dest = await destination_service.get_destination(db, org_id, destination_id)
        live = flt.for_live_sync()
        count = await count_receipts(db, org_id, live)
        if count > settings.SYNC_EXPORT_THRESHOLD:
            self._ensure_syncable(dest)
            job = self._queue_job(db, org_id, ExportJobKind.DESTINATION, count, live, destination_id=dest.id)
            await db.commit()
            (dispatch or _default_dispatch)(job.id)
            logger.info("[sync] queued job=%s destination=%s count=%d", job.id, dest.id, count)
            return QueuedJob(job_id=job.id, receipt_count=count)
        return await self.sync_destination(db, org_id, destination_id, live)

    # --- Live sync ------------------------------------------------------
    @staticmethod
    def _ensure_syncable(dest: Destination) -> None:
        if dest.status == DestinationStatus.ARCHIVED:
            raise NotFoundError("Destination not found")
        if dest.status == DestinationStatus.PAUSED:
            raise DestinationConfigError("Destination is paused; resume it before syncing")

    async def _synced_rows(
        self, db: AsyncSession, destination_id: str, receipt_ids: Sequence[str]
    ) -> Dict[str, SyncedReceipt]:
        if not receipt_ids:
            return {}
        stmt = select(SyncedReceipt).where(
            SyncedReceipt.destination_id == destination_id,
            SyncedReceipt.receipt_id.in_(list(receipt_ids)),
        )
        return {row.receipt_id: row for row in (await db.execute(stmt)).scalars().all()}

    async def _write_batch(
        self,
        db: AsyncSession,
        dest: Destination,
        writer: DestinationWriter,
        receipts: Sequence[Receipt],
    ) -> SyncResult:
        result = SyncResult(receipt_count=len(receipts))
        synced = await self._synced_rows(db, dest.id, [r.id for r in receipts])
        for receipt in receipts:
            row = synced.get(receipt.id)
            if row is None:
                row = SyncedReceipt(destination_id=dest.id, receipt_id=receipt.id, status=SyncedReceiptStatus.FAILED)
                db.add(row)
                synced[receipt.id] = row
            try:
                row.external_id = await writer.upsert(receipt, row.external_id)
            except ReauthRequiredError:
                raise
            except Exception as exc:
                message = _error_message(exc)
                row.status = SyncedReceiptStatus.FAILED
                row.error = message
                row.synced_at = utcnow()
                result.failed += 1
                result.errors.append(f"{receipt.id}: {message}")
                logger.warning(
                    "[sync] write failed destination=%s receipt=%s err=%s",
                    dest.id,
                    receipt.id,
                    message,
                    exc_info=not isinstance(exc, ReceiptSyncError),
                )
                continue
            row.status = SyncedReceiptStatus.SYNCED
            row.error = None
            row.synced_at = utcnow()
            result.succeeded += 1
        return result

    async def sync_destination(
        self,
        db: AsyncSession,
        org_id: str,
        destination_id: str,
        flt: Optional[ReceiptFilter] = None,
        writer_factory: Optional[WriterFactory] = None,
        receipts: Optional[Sequence[Receipt]] = None,
    ) -> SyncResult:
        """Upsert the selected receipts into one destination.

        ``receipts`` overrides the filter query (single-receipt syncs after
        extraction).  Raises ``ReauthRequiredError`` when the connection can
        no longer authorize writes; the destination error and
        ``last_synced_at`` are recorded first.
        """
        dest = await destination_service.get_destination(db, org_id, destination_id)
        self._ensure_syncable(dest)

        try:
            conn = await connection_service.get_decrypted(db, dest.connection_id, org_id)
            if conn.status == ConnectionStatus.NEEDS_REAUTH:
                raise ReauthRequiredError("Connection needs re-authorisation", connection_id=conn.id)
        except ReauthRequiredError as exc:
            dest.error = exc.message
            dest.last_synced_at = utcnow()
            await db.commit()
            raise

        if receipts is None:
            receipts = await fetch_receipts(db, org_id, (flt or ReceiptFilter()).for_live_sync())
        else:
            receipts = [r for r in receipts if r.status != ReceiptStatus.ARCHIVED]

        factory = writer_factory or self._writer_factory or build_writer
        writer = factory(dest, conn)
        reauth: Optional[ReauthRequiredError] = None
        try:
            result = await self._write_batch(db, dest, writer, receipts)
        except ReauthRequiredError as exc:
            reauth = exc
            result = SyncResult(receipt_count=len(receipts))
        finally:
            dest.last_synced_at = utcnow()
            await writer.aclose()

        if reauth is not None:
            # rows written before the failure are kept
            dest.error = f"Connection needs re-authorisation: {reauth.message}"
            await db.commit()
            await connection_service.mark_needs_reauth(db, conn.id, reauth.message)
            reauth.connection_id = conn.id
            sentry_metric_inc("sync.aborted_reauth", tags={"type": dest.type.value})
            raise reauth

        dest.error = failure_summary(result.failed, result.receipt_count, result.errors) if result.failed else None
        result.error = dest.error
        await db.commit()
        sentry_metric_inc("sync.receipts_written", value=result.succeeded, tags={"type": dest.type.value})
        logger.info(
            "[sync] destination=%s total=%d succeeded=%d failed=%d",
            dest.id,
            result.receipt_count,
            result.succeeded,
            result.failed,
        )
        return result

    async def sync_receipt_to_destinations(
        self, db: AsyncSession, receipt_id: str, writer_factory: Optional[WriterFactory] = None
    ) -> Dict[str, SyncResult]:
        """Push one receipt to every RUNNING destination of its organisation."""
        receipt = await db.get(Receipt, receipt_id)
        if receipt is None or receipt.status != ReceiptStatus.EXTRACTED:
            logger.info("[sync] receipt %s not eligible for live sync", receipt_id)
            return {}

        results: Dict[str, SyncResult] = {}
        for dest in await destination_service.list_running(db, receipt.org_id):
            try:
                results[dest.id] = await self.sync_destination(
                    db, receipt.org_id, dest.id, writer_factory=writer_factory, receipts=[receipt]
                )
            except ReceiptSyncError as exc:
                # one destination failing never blocks the others
                logger.warning("[sync] destination=%s skipped: %s", dest.id, exc.message)
        return results

    # --- Worker jobs ----------------------------------------------------
    async def run_export_job(self, db: AsyncSession, job_id: str) -> Optional[ExportJob]:
        job = await db.get(ExportJob, job_id)
        if job is None:
            logger.warning("[exports] job %s not found", job_id)
            return None
        if job.status != ExportJobStatus.QUEUED:
            logger.info("[exports] job=%s already %s", job.id, job.status.value)
            return job

        transition("export_job", job, ExportJobStatus.PROCESSING)
        job.started_at = utcnow()
        await db.commit()
        sentry_breadcrumb(category="exports", message="export_job.started", data={"job_id": job.id})

        configuration = job.configuration or {}
        flt = ReceiptFilter.from_dict(configuration.get("filters"))
        try:
            if job.kind == ExportJobKind.DESTINATION:
                # a partial failure is summarised on the destination, not the job
                result = await self.sync_destination(db, job.org_id, job.destination_id, flt)
                job.receipt_count = result.receipt_count
            else:
                await self._render_job_file(db, job, flt, configuration)
        except Exception as exc:
            await db.rollback()
            job = await db.get(ExportJob, job_id)
            transition("export_job", job, ExportJobStatus.FAILED)
            job.error = _error_message(exc)
            job.completed_at = utcnow()
            await db.commit()
            sentry_metric_inc("exports.failed", tags={"kind": job.kind.value})
            logger.error("[exports] job=%s failed: %s", job.id, job.error)
            return job

        transition("export_job", job, ExportJobStatus.COMPLETED)
        job.completed_at = utcnow()
        await db.commit()
        sentry_metric_inc("exports.completed", tags={"kind": job.kind.value})
        logger.info("[exports] job=%s completed count=%d", job.id, job.receipt_count)
        return job

    async def _render_job_file(
        self, db: AsyncSession, job: ExportJob, flt: ReceiptFilter, configuration: Dict[str, Any]
    ) -> None:
        org = await db.get(Organisation, job.org_id)
        if org is None:
            raise NotFoundError("Organization not found")
        columns = [ExportColumn(c) for c in configuration.get("columns") or []]
        receipts = await fetch_receipts(db, job.org_id, flt)
        if not receipts:
            raise NotFoundError("No receipts found matching the criteria")
        body, content_type, ext = render_export(receipts, columns, job.format or ExportFormat.CSV)
        key = export_object_key(job.org_id, job.id, export_filename(org.name, flt, ext))
        await asyncio.to_thread(self.storage.write_object, key, body, content_type)
        job.result_key = key
        job.receipt_count = len(receipts)


sync_service = SyncService()

__all__ = [
    "SyncService",
    "SyncResult",
    "InlineExport",
    "QueuedJob",
    "build_writer",
    "failure_summary",
    "sync_service",
]
