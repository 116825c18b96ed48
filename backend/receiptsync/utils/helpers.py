"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
import re
from typing import Optional

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d/%m/%Y", "%d.%m.%Y", "%b %d, %Y", "%d %b %Y", "%B %d, %Y")


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator on older interpreters. This function
    normalises that case and returns ``None`` if the value cannot be parsed.
    """
    if not value:
        return None
    try:
        if value.endswith(("z", "Z")):
            value = value[:-1] + "+00:00"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_receipt_date(value: str | None) -> Optional[dt.date]:
    """Best-effort parse of a date printed on a receipt.

    Tries ISO first, then a handful of common layouts. Returns ``None``
    rather than guessing when nothing matches.
    """
    if not value:
        return None
    value = value.strip()
    parsed = parse_iso_datetime(value)
    if parsed is not None:
        return parsed.date()
    for fmt in _DATE_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def slugify(value: str) -> str:
    """Lowercase, dash-separated form suitable for filenames."""
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "org"
