from __future__ import annotations

import base64

import pytest

from fakes import FakeExtractor
from receiptsync.core.errors import DecodeError
from receiptsync.models.enums import ReceiptStatus
from receiptsync.models.tables import Organisation, Receipt
from receiptsync.services.direct_extraction import extract_direct
from receiptsync.services.fingerprint import ContentSource, fingerprint_bytes

IMAGE = b"direct-receipt-image"
CACHED = {"vendor": "Cached Cafe", "amount": 3.0, "currency": "USD"}


async def _org_with_extracted(session):
    org = Organisation(name="Acme")
    session.add(org)
    await session.commit()
    receipt = Receipt(
        org_id=org.id,
        status=ReceiptStatus.EXTRACTED,
        image_hash=fingerprint_bytes(IMAGE),
        original_image_key=f"{org.id}/r/receipt.png",
        extraction_result=CACHED,
        confidence_score=0.8,
    )
    session.add(receipt)
    await session.commit()
    return org, receipt


@pytest.mark.asyncio
async def test_cache_hit_skips_the_model(session_factory):
    extractor = FakeExtractor()
    async with session_factory() as session:
        org, receipt = await _org_with_extracted(session)
        source = ContentSource(base64=base64.b64encode(IMAGE).decode())
        result = await extract_direct(session, org.id, source, extractor=extractor)
    assert result.cached is True
    assert result.existing_receipt_id == receipt.id
    assert result.data == CACHED
    assert result.confidence_score == 0.8
    assert result.image_hash == fingerprint_bytes(IMAGE)
    assert extractor.calls == []


@pytest.mark.asyncio
async def test_skip_cache_calls_the_model_and_scores_it(session_factory):
    extractor = FakeExtractor()
    async with session_factory() as session:
        org, _ = await _org_with_extracted(session)
        result = await extract_direct(session, org.id, ContentSource(data=IMAGE), skip_cache=True, extractor=extractor)
    assert result.cached is False
    assert extractor.calls == [IMAGE]
    assert result.data["vendor"] == "Blue Bottle"
    assert result.data["currency"] == "USD"
    assert result.confidence_score == pytest.approx(0.85)
    assert result.existing_receipt_id is None
    assert result.processing_time_ms is not None


@pytest.mark.asyncio
async def test_empty_source_is_a_decode_error(session_factory):
    async with session_factory() as session:
        with pytest.raises(DecodeError):
            await extract_direct(session, "org-1", ContentSource(), extractor=FakeExtractor())
