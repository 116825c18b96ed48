"""Observability helpers (Sentry init, scrubbing, breadcrumbs and spans).

Centralises Sentry initialisation for the API and the worker so
configuration does not drift. Every helper is a no-op when no DSN is
configured, which keeps tests and local runs silent.
"""

from __future__ import annotations

from contextlib import nullcontext
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receiptsync.core.config import settings

# Query parameters and body keys that may carry OAuth material
_SENSITIVE_KEYS = {"code", "state", "access_token", "refresh_token", "id_token", "client_secret"}


def _enabled() -> bool:
    return bool(settings.SENTRY_DSN)


def _scrub_mapping(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("[Filtered]" if k.lower() in _SENSITIVE_KEYS else v) for k, v in values.items()}


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):  # type: ignore[override]
    """Scrub credentials before sending to Sentry.

    - Drop Authorization & Cookie headers
    - Remove request bodies (keep method + URL)
    - Filter OAuth codes and tokens from query strings and extra data
    """
    try:
        req = event.get("request") or {}
        headers = req.get("headers") or {}
        for k in list(headers.keys()):
            if k.lower() in ("authorization", "cookie", "set-cookie", "x-api-key"):
                headers.pop(k, None)
        req.pop("data", None)
        query = req.get("query_string")
        if isinstance(query, dict):
            req["query_string"] = _scrub_mapping(query)
        elif isinstance(query, str) and any(f"{k}=" in query for k in _SENSITIVE_KEYS):
            req["query_string"] = "[Filtered]"
        event["request"] = req
        extra = event.get("extra")
        if isinstance(extra, dict):
            event["extra"] = _scrub_mapping(extra)
    except Exception:  # best effort
        pass
    return event


def init_sentry(service: str) -> bool:
    """Initialise Sentry once for a given process.

    Returns True if Sentry was initialised; False otherwise.
    """
    if not _enabled():
        return False
    if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
    """Best-effort: set tags on the current scope (strings only)."""
    if not _enabled():
        return
    try:
        for k, v in (tags or {}).items():
            sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
    except Exception:
        return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: add a breadcrumb for important lifecycle steps."""
    if not _enabled():
        return
    try:
        sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
    except Exception:
        return


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: increment a counter via Sentry metrics when the SDK offers it."""
    if not _enabled():
        return
    try:
        from sentry_sdk import metrics  # type: ignore

        safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
        metrics.increment(name, value=value, tags=safe_tags)  # type: ignore
    except Exception:
        return


def sentry_capture(exc: BaseException, tags: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: report an exception with optional tags."""
    if not _enabled():
        return
    try:
        with sentry_sdk.new_scope() as scope:
            for k, v in (tags or {}).items():
                scope.set_tag(str(k), str(v)[:128])
            sentry_sdk.capture_exception(exc)
    except Exception:
        return


def sentry_span(op: str, description: str):
    """Return a span context manager, or a null context when Sentry is off."""
    if not _enabled():
        return nullcontext()
    return sentry_sdk.start_span(op=op, name=description)


__all__ = [
    "init_sentry",
    "sentry_set_tags",
    "sentry_breadcrumb",
    "sentry_metric_inc",
    "sentry_capture",
    "sentry_span",
]
