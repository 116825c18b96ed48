from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Dict

import redis
import stripe
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from receiptsync.core.config import get_webhook_secret_list, settings
from receiptsync.core.database import AsyncSessionLocal
from receiptsync.core.observability import sentry_breadcrumb, sentry_metric_inc, sentry_set_tags
from receiptsync.core.tasks import apply_stripe_event, process_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

# Plan tier only changes through these events
PLAN_EVENTS = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


@lru_cache(maxsize=1)
def _get_redis_client():
    """Sync Redis client used only for event-id dedup; None when unreachable."""
    try:
        return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except redis.RedisError as e:
        logger.warning("[stripe] redis unavailable for dedup: %s", e)
        return None


def _is_duplicate(event_id: str) -> bool:
    r = _get_redis_client()
    if r is None:
        return False
    try:
        # store for 7 days; if already present, treat as duplicate and ack
        return not r.set(name=f"stripe:webhook:{event_id}", value="1", nx=True, ex=7 * 24 * 3600)
    except redis.RedisError as e:
        logger.warning("[stripe] redis dedup check failed: %s", e)
        return False


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """Handle Stripe webhook events.

    Verifies the Stripe-Signature header against every configured secret,
    drops redeliveries and hands plan changes to the worker.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    endpoint_secrets = get_webhook_secret_list()

    if not endpoint_secrets:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    last_sig_error: Exception | None = None
    verified = False
    for secret in endpoint_secrets:
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
            verified = True
            break
        except (stripe.error.SignatureVerificationError, ValueError) as e:
            last_sig_error = e
            continue
    if not verified:
        logger.warning("Invalid Stripe signature after trying %d secrets: %s", len(endpoint_secrets), last_sig_error)
        sentry_metric_inc("stripe.webhook.invalid_signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    # plain dict; the verified payload is what gets queued
    event: Dict[str, Any] = json.loads(payload)

    event_id = event.get("id")
    if event_id and _is_duplicate(event_id):
        logger.info("[stripe] duplicate webhook event ignored id=%s", event_id)
        sentry_metric_inc("stripe.webhook.duplicate")
        return JSONResponse(status_code=200, content={"received": True, "duplicate": True, "id": event_id})

    event_type: str = event.get("type", "")
    data_object: Dict[str, Any] = (event.get("data") or {}).get("object") or {}
    sentry_metric_inc("stripe.webhook.received", tags={"event_type": event_type})
    sentry_set_tags({"stripe.event_type": event_type})

    if event_type not in PLAN_EVENTS:
        logger.debug("[stripe] unhandled event type=%s id=%s", event_type, data_object.get("id"))
        return JSONResponse(status_code=200, content={"received": True, "type": event_type})

    sentry_breadcrumb(
        category="stripe",
        message=f"webhook:{event_type}",
        data={"object": data_object.get("object"), "id": data_object.get("id")},
    )
    try:
        process_stripe_event.send(event)
        sentry_metric_inc("stripe.webhook.queued", tags={"event_type": event_type})
        return JSONResponse(status_code=200, content={"received": True, "queued": True, "type": event_type})
    except Exception as e:
        logger.warning("[stripe] failed to enqueue event for async processing: %s", e)
        sentry_metric_inc("stripe.webhook.enqueue_error", tags={"event_type": event_type})

    # Broker unavailable: apply inline
    await apply_stripe_event(event, session_factory=AsyncSessionLocal)
    return JSONResponse(status_code=200, content={"received": True, "type": event_type})
