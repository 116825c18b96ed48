"""Dramatiq task definitions for background processing.

Receipt extraction, large exports, per-receipt destination syncs and
Stripe billing events are processed here rather than inside API
requests.  Each actor runs the async service layer with ``asyncio.run``
and a fresh session; retryable failures are re-raised so the
``Retries`` middleware reschedules the message.

To run these tasks start a Dramatiq worker pointed at the worker module:

```bash
dramatiq receiptsync.worker --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``; ``DRAMATIQ_BROKER_URL``
overrides it.  ``DRAMATIQ_BROKER=stub`` installs an in-memory
``StubBroker`` for tests and local scripts.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit
from dramatiq.results import Results
from dramatiq.results.backends import RedisBackend
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from receiptsync.core.config import settings
from receiptsync.core.database import db_url
from receiptsync.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptsync.models.enums import PlanType, ReceiptStatus
from receiptsync.models.tables import Organisation
from receiptsync.services.extraction_service import ExtractionService
from receiptsync.services.receipt_service import receipt_service
from receiptsync.services.sync_service import sync_service

logger = logging.getLogger(__name__)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def build_broker():
    if settings.DRAMATIQ_BROKER.lower() == "stub":
        stub = StubBroker()
        stub.emit_after("process_boot")
        return stub

    redis_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
    redis_broker = RedisBroker(url=redis_url)
    if not _has_mw(redis_broker, Results):
        redis_broker.add_middleware(Results(backend=RedisBackend(url=redis_url)))
    if not _has_mw(redis_broker, AgeLimit):
        redis_broker.add_middleware(AgeLimit())
    if not _has_mw(redis_broker, TimeLimit):
        redis_broker.add_middleware(TimeLimit())
    if not _has_mw(redis_broker, ShutdownNotifications):
        redis_broker.add_middleware(ShutdownNotifications())
    if not _has_mw(redis_broker, Retries):
        # Exponential backoff up to ~1m
        redis_broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000, backoff=2.0))
    logger.info("[tasks] dramatiq redis broker configured")
    return redis_broker


broker = build_broker()
dramatiq.set_broker(broker)

# Every actor call gets its own event loop, so pooled connections cannot be reused
worker_engine = create_async_engine(db_url, poolclass=NullPool)
WorkerSessionLocal = async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Async bodies.  Actors are thin wrappers so tests can await these directly.


async def run_process_receipt(receipt_id: str, session_factory=None, extractor=None) -> Optional[str]:
    """Extract one receipt; returns the receipt id when it reached EXTRACTED."""
    async with (session_factory or WorkerSessionLocal)() as session:
        receipt = await receipt_service.process_receipt(session, receipt_id, extractor or ExtractionService())
        if receipt is not None and receipt.status == ReceiptStatus.EXTRACTED:
            return receipt.id
    return None


async def run_export(job_id: str, session_factory=None) -> None:
    async with (session_factory or WorkerSessionLocal)() as session:
        await sync_service.run_export_job(session, job_id)


async def run_sync_receipt(receipt_id: str, session_factory=None) -> Dict[str, Any]:
    async with (session_factory or WorkerSessionLocal)() as session:
        results = await sync_service.sync_receipt_to_destinations(session, receipt_id)
    return {dest_id: {"succeeded": r.succeeded, "failed": r.failed} for dest_id, r in results.items()}


def plan_for_price(price_id: Optional[str]) -> Optional[PlanType]:
    if not price_id:
        return None
    if price_id == settings.STRIPE_PRICE_PRO_MONTHLY:
        return PlanType.PRO
    if price_id == settings.STRIPE_PRICE_BUSINESS_MONTHLY:
        return PlanType.BUSINESS
    return None


def _from_timestamp(value: Any) -> Optional[dt.datetime]:
    if not value:
        return None
    return dt.datetime.fromtimestamp(int(value), tz=dt.timezone.utc).replace(tzinfo=None)


def _first_price_id(container: Dict[str, Any]) -> Optional[str]:
    items = (container or {}).get("data") or []
    if not items:
        return None
    return ((items[0] or {}).get("price") or {}).get("id")


async def apply_stripe_event(event: Dict[str, Any], session_factory=None) -> Optional[str]:
    """Apply a billing event to its organisation; returns the org id touched.

    Idempotent: replaying an event leaves the organisation unchanged.
    """
    event_type = event.get("type", "")
    data_object = (event.get("data") or {}).get("object") or {}

    async with (session_factory or WorkerSessionLocal)() as session:
        if event_type == "checkout.session.completed":
            org_id = data_object.get("client_reference_id")
            customer = data_object.get("customer")
            if not org_id or not customer:
                return None
            org = await session.get(Organisation, org_id)
            if org is None:
                logger.warning("[stripe][task] checkout for unknown org=%s", org_id)
                return None
            if not org.stripe_customer_id:
                org.stripe_customer_id = customer
                await session.commit()
            return org.id

        if event_type not in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            return None

        customer = data_object.get("customer")
        if not customer:
            return None
        org = (
            await session.execute(select(Organisation).where(Organisation.stripe_customer_id == customer))
        ).scalar_one_or_none()
        if org is None:
            logger.info("[stripe][task] no organisation for customer=%s", customer)
            return None

        status = data_object.get("status")
        org.subscription_status = status
        if event_type == "customer.subscription.deleted" or status in ("canceled", "unpaid", "incomplete_expired"):
            org.plan = PlanType.FREE
            org.billing_period_start = None
            org.billing_period_end = None
        elif status in ("active", "trialing"):
            new_plan = plan_for_price(_first_price_id(data_object.get("items") or {}))
            if new_plan is not None:
                org.plan = new_plan
            org.billing_period_start = _from_timestamp(data_object.get("current_period_start"))
            org.billing_period_end = _from_timestamp(data_object.get("current_period_end"))
        await session.commit()
        sentry_metric_inc("billing.subscription_event", tags={"type": event_type, "plan": org.plan.value})
        logger.info("[stripe][task] org=%s plan=%s status=%s", org.id, org.plan.value, status)
        return org.id


# ---------------------------------------------------------------------------
# Actors


@dramatiq.actor(max_retries=3, time_limit=5 * 60 * 1000)
def process_receipt(receipt_id: str) -> None:
    """Extract a confirmed receipt, then fan it out to live destinations."""
    sentry_breadcrumb(category="tasks", message="process_receipt", data={"receipt_id": receipt_id})
    extracted = asyncio.run(run_process_receipt(receipt_id))
    if extracted:
        sync_receipt.send(extracted)


@dramatiq.actor(max_retries=3, time_limit=30 * 60 * 1000)
def run_export_job(job_id: str) -> None:
    sentry_breadcrumb(category="tasks", message="run_export_job", data={"job_id": job_id})
    asyncio.run(run_export(job_id))


@dramatiq.actor(max_retries=3)
def sync_receipt(receipt_id: str) -> None:
    results = asyncio.run(run_sync_receipt(receipt_id))
    logger.info("[tasks] synced receipt=%s destinations=%d", receipt_id, len(results))


@dramatiq.actor(max_retries=5)
def process_stripe_event(event: dict) -> None:
    """Keep this handler idempotent; Stripe may redeliver events."""
    try:
        asyncio.run(apply_stripe_event(event))
    except Exception as exc:
        logger.error("[stripe][task] failed to process event %s: %s", event.get("type"), exc)
        raise


__all__ = [
    "broker",
    "build_broker",
    "process_receipt",
    "run_export_job",
    "sync_receipt",
    "process_stripe_event",
    "run_process_receipt",
    "run_export",
    "run_sync_receipt",
    "apply_stripe_event",
    "plan_for_price",
]
