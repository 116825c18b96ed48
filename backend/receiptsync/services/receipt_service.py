"""Receipt lifecycle: upload, confirm, extract, archive.

A receipt moves PENDING -> PROCESSING -> EXTRACTED and may be archived
from any non-terminal state.  Every status change goes through
``receiptsync.models.transitions`` so an illegal move raises
``InvalidTransitionError`` instead of silently overwriting the column.

The API layer calls ``create_upload`` / ``confirm_upload``; the worker
calls ``process_receipt``.  Blocking MinIO calls are pushed to a thread
so request handlers stay responsive.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.config import settings
from receiptsync.core.errors import (
    DecodeError,
    DuplicateReceiptError,
    NotFoundError,
)
from receiptsync.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptsync.models.enums import ReceiptCategory, ReceiptStatus
from receiptsync.models.schemas import ExtractedReceipt
from receiptsync.models.tables import Receipt, new_id
from receiptsync.models.transitions import can_transition, transition
from receiptsync.services.admission_service import admission_service
from receiptsync.services.dedup_cache import dedup_cache
from receiptsync.services.fingerprint import fingerprint_bytes
from receiptsync.services.storage_service import StorageService, get_storage, receipt_object_key
from receiptsync.utils.helpers import parse_receipt_date, utcnow

logger = logging.getLogger(__name__)

Dispatch = Callable[[str], Any]

CONFIDENCE_WEIGHTS: Dict[str, float] = {
    "vendor": 0.3,
    "amount": 0.4,
    "date": 0.2,
    "currency": 0.1,
}
DEFAULT_CONFIDENCE = 0.5

_NON_LETTERS = re.compile(r"[^a-z]")


def calculate_overall_confidence(field_confidence: Optional[Dict[str, float]]) -> float:
    """Weighted mean over the key fields that reported a confidence."""
    total = 0.0
    weight_sum = 0.0
    for name, weight in CONFIDENCE_WEIGHTS.items():
        value = (field_confidence or {}).get(name)
        if value is None:
            continue
        total += float(value) * weight
        weight_sum += weight
    if weight_sum == 0:
        return DEFAULT_CONFIDENCE
    return total / weight_sum


def map_to_category(raw: Optional[str]) -> ReceiptCategory:
    if not raw:
        return ReceiptCategory.OTHER
    cleaned = _NON_LETTERS.sub("", raw.lower())
    try:
        return ReceiptCategory(cleaned)
    except ValueError:
        return ReceiptCategory.OTHER


def _apply_extraction(receipt: Receipt, result: Dict[str, Any], confidence: Optional[float]) -> None:
    """Store the payload and its denormalised columns on the receipt."""
    parsed = ExtractedReceipt.model_validate(result)
    receipt.extraction_result = parsed.model_dump()
    receipt.confidence_score = confidence if confidence is not None else calculate_overall_confidence(parsed.field_confidence)
    receipt.vendor = parsed.vendor
    receipt.amount = parsed.amount
    receipt.currency = parsed.currency
    receipt.receipt_date = parse_receipt_date(parsed.date)
    receipt.category = map_to_category(parsed.category).value
    receipt.tax_amount = parsed.tax_amount
    receipt.subtotal = parsed.subtotal
    receipt.payment_method = parsed.payment_method
    receipt.receipt_number = parsed.receipt_number
    receipt.notes = parsed.notes
    receipt.extraction_error = None
    receipt.processed_at = utcnow()


def _default_dispatch(receipt_id: str) -> None:
    from receiptsync.core.tasks import process_receipt as process_receipt_actor

    process_receipt_actor.send(receipt_id)


class ReceiptService:
    """Tenant-scoped receipt operations."""

    def __init__(self, storage: Optional[StorageService] = None) -> None:
        self._storage = storage

    @property
    def storage(self) -> StorageService:
        return self._storage or get_storage()

    # --- Reads ----------------------------------------------------------
    async def get_receipt(self, db: AsyncSession, org_id: str, receipt_id: str) -> Receipt:
        receipt = await db.get(Receipt, receipt_id)
        if receipt is None or receipt.org_id != org_id:
            raise NotFoundError("Receipt not found")
        return receipt

    async def list_receipts(
        self,
        db: AsyncSession,
        org_id: str,
        statuses: Optional[Sequence[ReceiptStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Receipt]:
        stmt = select(Receipt).where(Receipt.org_id == org_id)
        if statuses:
            stmt = stmt.where(Receipt.status.in_(list(statuses)))
        else:
            stmt = stmt.where(Receipt.status != ReceiptStatus.ARCHIVED)
        stmt = stmt.order_by(Receipt.created_at.desc()).limit(limit).offset(offset)
        return list((await db.execute(stmt)).scalars().all())

    # --- Upload ---------------------------------------------------------
    async def create_upload(
        self, db: AsyncSession, org_id: str, filename: str, content_type: str, size: int
    ) -> tuple[Receipt, str]:
        if content_type not in settings.ALLOWED_CONTENT_TYPES:
            raise DecodeError(
                f"Unsupported file type {content_type}. Allowed: {', '.join(sorted(settings.ALLOWED_CONTENT_TYPES))}"
            )
        if size <= 0 or size > settings.MAX_UPLOAD_SIZE:
            raise DecodeError(f"File size must be between 1 byte and {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB")

        (await admission_service.can_add_receipt(db, org_id)).raise_if_denied()

        receipt_id = new_id()
        key = receipt_object_key(org_id, receipt_id, filename)
        receipt = Receipt(
            id=receipt_id,
            org_id=org_id,
            status=ReceiptStatus.PENDING,
            original_image_key=key,
            filename=filename,
            content_type=content_type,
        )
        db.add(receipt)
        await db.commit()
        upload_url = await asyncio.to_thread(self.storage.presigned_upload_url, key)
        logger.info("[receipts] upload url issued org=%s receipt=%s", org_id, receipt_id)
        return receipt, upload_url

    async def confirm_upload(
        self,
        db: AsyncSession,
        org_id: str,
        receipt_id: str,
        dispatch: Optional[Dispatch] = None,
    ) -> tuple[Receipt, str]:
        """Hash the uploaded object, reject duplicates and queue extraction.

        Returns ``(receipt, message)``.  Confirming a receipt that already
        left PENDING is a no-op.
        """
        receipt = await self.get_receipt(db, org_id, receipt_id)
        if receipt.status != ReceiptStatus.PENDING:
            return receipt, "Receipt already processed"

        key = receipt.original_image_key
        if not await asyncio.to_thread(self.storage.object_exists, key):
            raise NotFoundError("Uploaded file not found. Please upload the file first.")
        data = await asyncio.to_thread(self.storage.read_object, key)
        image_hash = fingerprint_bytes(data)

        existing_id = await dedup_cache.check_duplicate(db, org_id, image_hash)
        if existing_id and existing_id != receipt.id:
            receipt.image_hash = image_hash
            transition("receipt", receipt, ReceiptStatus.ARCHIVED)
            receipt.archived_at = utcnow()
            await db.commit()
            sentry_metric_inc("receipts.duplicate_rejected")
            logger.info("[receipts] duplicate upload org=%s receipt=%s existing=%s", org_id, receipt.id, existing_id)
            raise DuplicateReceiptError(existing_id)

        receipt.image_hash = image_hash
        transition("receipt", receipt, ReceiptStatus.PROCESSING)
        await db.commit()
        (dispatch or _default_dispatch)(receipt.id)
        sentry_breadcrumb(category="receipts", message="receipt.confirmed", data={"receipt_id": receipt.id})
        return receipt, "Receipt queued for processing"

    # --- Worker ---------------------------------------------------------
    async def process_receipt(
        self,
        db: AsyncSession,
        receipt_id: str,
        extractor: Any,
    ) -> Optional[Receipt]:
        """Extract one receipt, reusing a prior extraction of identical content."""
        receipt = await db.get(Receipt, receipt_id)
        if receipt is None:
            logger.warning("[receipts] process skipped; receipt %s not found", receipt_id)
            return None
        if receipt.status != ReceiptStatus.PROCESSING:
            logger.info("[receipts] process skipped receipt=%s status=%s", receipt_id, receipt.status.value)
            return receipt

        data: Optional[bytes] = None
        if not receipt.image_hash:
            data = await asyncio.to_thread(self.storage.read_object, receipt.original_image_key)
            receipt.image_hash = fingerprint_bytes(data)

        hit = await dedup_cache.lookup(db, receipt.org_id, receipt.image_hash, exclude_receipt_id=receipt.id)
        if hit.found and hit.extraction_result is not None:
            _apply_extraction(receipt, hit.extraction_result, hit.confidence_score)
            transition("receipt", receipt, ReceiptStatus.EXTRACTED)
            await db.commit()
            logger.info("[receipts] reused extraction receipt=%s from=%s", receipt.id, hit.existing_receipt_id)
            return receipt

        try:
            if data is None:
                data = await asyncio.to_thread(self.storage.read_object, receipt.original_image_key)
            result = await extractor.extract(data, receipt.content_type)
        except Exception as exc:
            receipt.extraction_error = str(exc)[:2000]
            receipt.extraction_attempts = (receipt.extraction_attempts or 0) + 1
            await db.commit()
            sentry_metric_inc("receipts.extraction_failed")
            logger.warning(
                "[receipts] extraction failed receipt=%s attempt=%s err=%s",
                receipt.id,
                receipt.extraction_attempts,
                exc,
            )
            raise

        payload = result.model_dump() if isinstance(result, ExtractedReceipt) else dict(result)
        _apply_extraction(receipt, payload, None)
        transition("receipt", receipt, ReceiptStatus.EXTRACTED)
        await db.commit()
        sentry_metric_inc("receipts.extracted")
        logger.info("[receipts] extracted receipt=%s confidence=%.2f", receipt.id, receipt.confidence_score or 0)
        return receipt

    # --- Mutations ------------------------------------------------------
    async def archive_receipt(self, db: AsyncSession, org_id: str, receipt_id: str) -> Receipt:
        receipt = await self.get_receipt(db, org_id, receipt_id)
        transition("receipt", receipt, ReceiptStatus.ARCHIVED)
        # denormalised columns are kept for history
        receipt.extraction_result = None
        receipt.archived_at = utcnow()
        await db.commit()
        logger.info("[receipts] archived org=%s receipt=%s", org_id, receipt_id)
        return receipt

    async def archive_receipts(self, db: AsyncSession, org_id: str, receipt_ids: Sequence[str]) -> List[str]:
        """Archive every listed receipt the organisation owns, in one commit.

        Ids from other organisations and receipts already archived are
        skipped; if nothing is left to archive the call fails.
        """
        stmt = select(Receipt).where(Receipt.org_id == org_id, Receipt.id.in_(set(receipt_ids)))
        receipts = (await db.execute(stmt)).scalars().all()
        targets = [r for r in receipts if can_transition("receipt", r.status, ReceiptStatus.ARCHIVED)]
        if not targets:
            raise NotFoundError("No valid receipt IDs found")
        now = utcnow()
        for receipt in targets:
            transition("receipt", receipt, ReceiptStatus.ARCHIVED)
            receipt.extraction_result = None
            receipt.archived_at = now
        await db.commit()
        archived = [r.id for r in targets]
        logger.info("[receipts] bulk archived org=%s count=%d", org_id, len(archived))
        return archived

    async def update_receipt_fields(
        self, db: AsyncSession, org_id: str, receipt_id: str, updates: Dict[str, Any]
    ) -> Receipt:
        receipt = await self.get_receipt(db, org_id, receipt_id)
        if receipt.status != ReceiptStatus.EXTRACTED:
            raise DecodeError("Only extracted receipts can be edited")
        payload = dict(receipt.extraction_result or {})
        for field, value in updates.items():
            if field == "category" and value is not None:
                value = getattr(value, "value", value)
            setattr(receipt, field, value)
            key = "date" if field == "receipt_date" else field
            payload[key] = value.isoformat() if hasattr(value, "isoformat") else value
        receipt.extraction_result = payload
        await db.commit()
        await db.refresh(receipt)
        return receipt


receipt_service = ReceiptService()

__all__ = [
    "ReceiptService",
    "receipt_service",
    "calculate_overall_confidence",
    "map_to_category",
    "CONFIDENCE_WEIGHTS",
]
