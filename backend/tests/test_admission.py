from __future__ import annotations

import datetime as dt

import pytest

from receiptsync.core.errors import LimitExceededError
from receiptsync.models.enums import ConnectionType, DestinationStatus, DestinationType, PlanType, ReceiptStatus
from receiptsync.models.tables import Connection, Destination, Organisation, Receipt
from receiptsync.services.admission_service import AdmissionService, calendar_month_bounds
from receiptsync.utils.helpers import utcnow


async def _org(session, plan=PlanType.FREE):
    org = Organisation(name=f"org-{plan.value}", plan=plan)
    session.add(org)
    await session.commit()
    return org


async def _receipts(session, org_id, n, status=ReceiptStatus.EXTRACTED, created_at=None):
    for _ in range(n):
        kwargs = {"created_at": created_at} if created_at else {}
        session.add(Receipt(org_id=org_id, status=status, original_image_key="k", **kwargs))
    await session.commit()


async def _destination(session, org_id, status=DestinationStatus.RUNNING):
    conn = Connection(org_id=org_id, type=ConnectionType.NOTION, encrypted_credential="x")
    session.add(conn)
    await session.flush()
    session.add(
        Destination(
            org_id=org_id,
            type=DestinationType.NOTION,
            status=status,
            configuration={"database_id": "db"},
            connection_id=conn.id,
        )
    )
    await session.commit()


@pytest.mark.asyncio
async def test_free_plan_denies_exactly_at_fifty(session_factory):
    svc = AdmissionService()
    async with session_factory() as session:
        org = await _org(session)
        await _receipts(session, org.id, 49)
        check = await svc.can_add_receipt(session, org.id)
        assert check.allowed is True
        assert check.current_count == 49

        await _receipts(session, org.id, 1)
        check = await svc.can_add_receipt(session, org.id)
    assert check.allowed is False
    assert check.current_count == 50
    assert check.limit == 50
    assert check.suggested_plan == PlanType.PRO
    assert "50 receipts" in check.reason


@pytest.mark.asyncio
async def test_archived_and_previous_period_receipts_do_not_count(session_factory):
    svc = AdmissionService()
    last_month = calendar_month_bounds(utcnow())[0] - dt.timedelta(days=3)
    async with session_factory() as session:
        org = await _org(session)
        await _receipts(session, org.id, 30, status=ReceiptStatus.ARCHIVED)
        await _receipts(session, org.id, 30, created_at=last_month)
        await _receipts(session, org.id, 10)
        check = await svc.can_add_receipt(session, org.id)
    assert check.allowed is True
    assert check.current_count == 10


@pytest.mark.asyncio
async def test_subscription_period_replaces_calendar_month(session_factory):
    svc = AdmissionService()
    now = utcnow()
    async with session_factory() as session:
        org = await _org(session)
        org.billing_period_start = now - dt.timedelta(days=1)
        org.billing_period_end = now + dt.timedelta(days=29)
        await session.commit()
        await _receipts(session, org.id, 5, created_at=now - dt.timedelta(days=2))
        await _receipts(session, org.id, 2)
        usage = await svc.get_usage(session, org.id)
    assert usage.receipts_used == 2
    assert usage.billing_period_start == org.billing_period_start


@pytest.mark.asyncio
async def test_pro_suggests_business_and_business_is_unlimited(session_factory):
    svc = AdmissionService()
    async with session_factory() as session:
        pro = await _org(session, PlanType.PRO)
        await _receipts(session, pro.id, 500)
        check = await svc.can_add_receipt(session, pro.id)
        assert check.allowed is False
        assert check.suggested_plan == PlanType.BUSINESS

        business = await _org(session, PlanType.BUSINESS)
        await _receipts(session, business.id, 600)
        check = await svc.can_add_receipt(session, business.id)
    assert check.allowed is True
    assert check.limit is None


@pytest.mark.asyncio
async def test_destination_limit_ignores_archived(session_factory):
    svc = AdmissionService()
    async with session_factory() as session:
        org = await _org(session)
        await _destination(session, org.id, status=DestinationStatus.ARCHIVED)
        assert (await svc.can_add_destination(session, org.id)).allowed is True

        await _destination(session, org.id)
        check = await svc.can_add_destination(session, org.id)
    assert check.allowed is False
    assert check.limit == 1
    assert check.reason.endswith("1 destination. Please upgrade to add more.")
    with pytest.raises(LimitExceededError) as exc_info:
        check.raise_if_denied()
    assert exc_info.value.status_code == 402
    assert exc_info.value.details()["suggested_plan"] == "pro"


@pytest.mark.asyncio
async def test_usage_warning_levels_and_prompts(session_factory):
    svc = AdmissionService()
    async with session_factory() as session:
        org = await _org(session)
        await _receipts(session, org.id, 40)
        usage = await svc.get_usage(session, org.id)
        assert usage.percent_receipts_used == 80
        assert svc.warning_level(usage) == 80
        assert svc.upgrade_prompt(usage) == "You've used 80% of your monthly receipts."

        await _receipts(session, org.id, 6)
        usage = await svc.get_usage(session, org.id)
        assert svc.warning_level(usage) == 90
        assert svc.upgrade_prompt(usage) == "You have 4 receipts remaining this month."

        await _receipts(session, org.id, 4)
        usage = await svc.get_usage(session, org.id)
    assert svc.warning_level(usage) == 100
    assert "Upgrade to Pro" in svc.upgrade_prompt(usage)


def test_calendar_month_bounds_rolls_over_december():
    start, end = calendar_month_bounds(dt.datetime(2024, 12, 15, 10, 0))
    assert start == dt.datetime(2024, 12, 1)
    assert end == dt.datetime(2025, 1, 1)
