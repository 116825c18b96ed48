"""Deduplication cache over already extracted receipts.

There is no separate cache store: lookups are queries against the
``receipts`` table filtered by organisation, content hash and status.
Archiving a receipt therefore removes it from future matches without any
invalidation step.

Two read patterns are exposed:

``lookup``
    Finds a prior *successful* extraction (status EXTRACTED) so the
    worker can copy its result instead of calling the extraction model.
``check_duplicate``
    Finds any non-archived receipt with the same content, used by the
    upload confirmation path to reject re-uploads early.

Both are strictly scoped to one organisation.  When several rows match,
the first row returned by the database wins; ingestion keeps at most one
canonical extracted row per hash per organisation in steady state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.observability import sentry_metric_inc
from receiptsync.models.enums import ReceiptStatus
from receiptsync.models.tables import Receipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheLookup:
    found: bool
    extraction_result: Optional[Dict[str, Any]] = None
    existing_receipt_id: Optional[str] = None
    confidence_score: Optional[float] = None


MISS = CacheLookup(found=False)


class DedupCache:
    """Read patterns over the receipt store keyed by (org, image hash)."""

    async def lookup(
        self,
        db: AsyncSession,
        org_id: str,
        image_hash: str,
        exclude_receipt_id: Optional[str] = None,
    ) -> CacheLookup:
        if not image_hash:
            return MISS
        stmt = select(Receipt).where(
            Receipt.org_id == org_id,
            Receipt.image_hash == image_hash,
            Receipt.status == ReceiptStatus.EXTRACTED,
        )
        if exclude_receipt_id:
            stmt = stmt.where(Receipt.id != exclude_receipt_id)
        match = (await db.execute(stmt.limit(1))).scalars().first()
        if match is None or match.extraction_result is None:
            sentry_metric_inc("dedup.lookup", tags={"result": "miss"})
            return MISS
        logger.info("[dedup] cache hit org=%s hash=%s existing=%s", org_id, image_hash[:12], match.id)
        sentry_metric_inc("dedup.lookup", tags={"result": "hit"})
        return CacheLookup(
            found=True,
            extraction_result=dict(match.extraction_result),
            existing_receipt_id=match.id,
            confidence_score=match.confidence_score,
        )

    async def check_duplicate(self, db: AsyncSession, org_id: str, image_hash: str) -> Optional[str]:
        if not image_hash:
            return None
        stmt = (
            select(Receipt.id)
            .where(
                Receipt.org_id == org_id,
                Receipt.image_hash == image_hash,
                Receipt.status != ReceiptStatus.ARCHIVED,
            )
            .limit(1)
        )
        return (await db.execute(stmt)).scalars().first()


dedup_cache = DedupCache()

__all__ = ["CacheLookup", "DedupCache", "dedup_cache", "MISS"]
