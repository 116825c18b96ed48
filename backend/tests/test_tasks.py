from __future__ import annotations

import datetime as dt

import pytest
from dramatiq.brokers.stub import StubBroker

from fakes import FakeExtractor, FakeStorage, upstream_down
from receiptsync.core import tasks
from receiptsync.core.errors import FetchError
from receiptsync.models.enums import PlanType, ReceiptStatus
from receiptsync.models.tables import Organisation, Receipt


@pytest.fixture
def storage(monkeypatch):
    fake = FakeStorage()
    monkeypatch.setattr(tasks.receipt_service, "_storage", fake)
    return fake


async def _processing_receipt(session_factory, storage, data=b"img"):
    async with session_factory() as session:
        org = Organisation(name="Acme")
        session.add(org)
        await session.flush()
        receipt = Receipt(
            org_id=org.id,
            status=ReceiptStatus.PROCESSING,
            original_image_key=f"{org.id}/r/coffee.png",
            content_type="image/png",
        )
        session.add(receipt)
        await session.commit()
    storage.objects[receipt.original_image_key] = data
    return receipt.id


def test_stub_broker_in_tests():
    assert isinstance(tasks.broker, StubBroker)
    tasks.process_receipt.send("r-1")
    assert tasks.broker.queues[tasks.process_receipt.queue_name].qsize() == 1
    tasks.broker.flush_all()


@pytest.mark.asyncio
async def test_process_receipt_body_extracts(session_factory, storage):
    receipt_id = await _processing_receipt(session_factory, storage)
    extractor = FakeExtractor()

    assert await tasks.run_process_receipt(receipt_id, session_factory=session_factory, extractor=extractor) == receipt_id
    assert extractor.calls == [b"img"]
    async with session_factory() as session:
        receipt = await session.get(Receipt, receipt_id)
    assert receipt.status == ReceiptStatus.EXTRACTED
    assert receipt.vendor == "Blue Bottle"
    assert receipt.image_hash

    # a second delivery of the same message is a no-op
    assert await tasks.run_process_receipt(receipt_id, session_factory=session_factory, extractor=extractor) is None
    assert len(extractor.calls) == 1


@pytest.mark.asyncio
async def test_process_receipt_body_reraises_for_retry(session_factory, storage):
    receipt_id = await _processing_receipt(session_factory, storage)
    with pytest.raises(FetchError):
        await tasks.run_process_receipt(
            receipt_id, session_factory=session_factory, extractor=FakeExtractor(error=upstream_down())
        )
    async with session_factory() as session:
        receipt = await session.get(Receipt, receipt_id)
    assert receipt.status == ReceiptStatus.PROCESSING
    assert receipt.extraction_attempts == 1
    assert "upstream unavailable" in receipt.extraction_error


@pytest.mark.asyncio
async def test_missing_receipt_and_no_destinations(session_factory, storage):
    assert await tasks.run_process_receipt("nope", session_factory=session_factory, extractor=FakeExtractor()) is None
    receipt_id = await _processing_receipt(session_factory, storage)
    assert await tasks.run_sync_receipt(receipt_id, session_factory=session_factory) == {}


def test_plan_for_price(monkeypatch):
    monkeypatch.setattr(tasks.settings, "STRIPE_PRICE_PRO_MONTHLY", "price_pro", raising=False)
    monkeypatch.setattr(tasks.settings, "STRIPE_PRICE_BUSINESS_MONTHLY", "price_biz", raising=False)
    assert tasks.plan_for_price("price_pro") == PlanType.PRO
    assert tasks.plan_for_price("price_biz") == PlanType.BUSINESS
    assert tasks.plan_for_price("price_other") is None
    assert tasks.plan_for_price(None) is None


def _subscription_event(event_type, status="active", price="price_pro"):
    return {
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": status,
                "current_period_start": 1_700_000_000,
                "current_period_end": 1_702_592_000,
                "items": {"data": [{"price": {"id": price}}]},
            }
        },
    }


@pytest.mark.asyncio
async def test_billing_events_move_plan(monkeypatch, session_factory):
    monkeypatch.setattr(tasks.settings, "STRIPE_PRICE_PRO_MONTHLY", "price_pro", raising=False)
    async with session_factory() as session:
        org = Organisation(name="Acme")
        session.add(org)
        await session.commit()
        org_id = org.id

    checkout = {
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {"client_reference_id": org_id, "customer": "cus_1"}},
    }
    assert await tasks.apply_stripe_event(checkout, session_factory=session_factory) == org_id

    updated = _subscription_event("customer.subscription.updated")
    assert await tasks.apply_stripe_event(updated, session_factory=session_factory) == org_id
    # replaying is harmless
    assert await tasks.apply_stripe_event(updated, session_factory=session_factory) == org_id
    async with session_factory() as session:
        org = await session.get(Organisation, org_id)
        assert org.stripe_customer_id == "cus_1"
        assert org.plan == PlanType.PRO
        assert org.subscription_status == "active"
        assert org.billing_period_start == dt.datetime(2023, 11, 14, 22, 13, 20)

    await tasks.apply_stripe_event(_subscription_event("customer.subscription.deleted", status="canceled"),
                                   session_factory=session_factory)
    async with session_factory() as session:
        org = await session.get(Organisation, org_id)
    assert org.plan == PlanType.FREE
    assert org.billing_period_start is None
    assert org.billing_period_end is None


@pytest.mark.asyncio
async def test_billing_events_for_unknown_targets_are_ignored(session_factory):
    checkout = {"type": "checkout.session.completed", "data": {"object": {"client_reference_id": "nope", "customer": "c"}}}
    assert await tasks.apply_stripe_event(checkout, session_factory=session_factory) is None
    assert await tasks.apply_stripe_event(_subscription_event("customer.subscription.updated"),
                                          session_factory=session_factory) is None
    assert await tasks.apply_stripe_event({"type": "invoice.paid"}, session_factory=session_factory) is None
