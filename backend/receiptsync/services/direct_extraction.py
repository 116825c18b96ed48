"""One-off extraction from an image that is not stored as a receipt.

The image arrives as base64 or a URL, is fingerprinted, and the
organisation's dedup cache is consulted before the extraction model is
called.  Nothing is written to the database.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.observability import sentry_metric_inc
from receiptsync.models.schemas import ExtractedReceipt
from receiptsync.services.dedup_cache import dedup_cache
from receiptsync.services.extraction_service import ExtractionService
from receiptsync.services.fingerprint import ContentSource, fingerprint_bytes, load_bytes
from receiptsync.services.receipt_service import calculate_overall_confidence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectExtraction:
    cached: bool
    data: Dict[str, Any]
    confidence_score: Optional[float]
    image_hash: str
    existing_receipt_id: Optional[str] = None
    processing_time_ms: Optional[int] = None


async def extract_direct(
    db: AsyncSession,
    org_id: str,
    source: ContentSource,
    media_type: Optional[str] = None,
    skip_cache: bool = False,
    extractor: Optional[ExtractionService] = None,
) -> DirectExtraction:
    data = await load_bytes(source)
    image_hash = fingerprint_bytes(data)

    if not skip_cache:
        hit = await dedup_cache.lookup(db, org_id, image_hash)
        if hit.found:
            sentry_metric_inc("extract.direct", tags={"cached": "true"})
            return DirectExtraction(
                cached=True,
                data=hit.extraction_result or {},
                confidence_score=hit.confidence_score,
                image_hash=image_hash,
                existing_receipt_id=hit.existing_receipt_id,
            )

    started = time.monotonic()
    result = await (extractor or ExtractionService()).extract(data, media_type)
    parsed = ExtractedReceipt.model_validate(result)
    elapsed_ms = int((time.monotonic() - started) * 1000)
    sentry_metric_inc("extract.direct", tags={"cached": "false"})
    logger.info("[extract] direct org=%s hash=%s ms=%d", org_id, image_hash[:12], elapsed_ms)
    return DirectExtraction(
        cached=False,
        data=parsed.model_dump(),
        confidence_score=calculate_overall_confidence(parsed.field_confidence),
        image_hash=image_hash,
        processing_time_ms=elapsed_ms,
    )


__all__ = ["DirectExtraction", "extract_direct"]
