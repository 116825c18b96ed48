"""Admission control: plan limits and usage checks.

This module centralises plan enforcement so API route handlers and
services stay thin. The checks are advisory: they return a decision
(:class:`LimitCheck`) and the caller decides how to reject, typically by
raising :class:`LimitExceededError` with the same numbers so the user
sees exactly which limit was hit.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.errors import LimitExceededError, NotFoundError
from receiptsync.models.enums import PlanType, ReceiptStatus, DestinationStatus
from receiptsync.models.tables import Destination, Organisation, Receipt
from receiptsync.utils.helpers import utcnow


@dataclass(frozen=True)
class PlanLimits:
    plan: PlanType
    receipts_per_period: Optional[int]  # None => unlimited
    max_destinations: Optional[int]  # None => unlimited
    priority_processing: bool
    team_features: bool
    api_access: bool


PLAN_LIMIT_MATRIX: Dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(
        plan=PlanType.FREE,
        receipts_per_period=50,
        max_destinations=1,
        priority_processing=False,
        team_features=False,
        api_access=False,
    ),
    PlanType.PRO: PlanLimits(
        plan=PlanType.PRO,
        receipts_per_period=500,
        max_destinations=None,
        priority_processing=True,
        team_features=False,
        api_access=False,
    ),
    PlanType.BUSINESS: PlanLimits(
        plan=PlanType.BUSINESS,
        receipts_per_period=None,
        max_destinations=None,
        priority_processing=True,
        team_features=True,
        api_access=True,
    ),
}


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current_count: int
    limit: Optional[int]
    reason: Optional[str] = None
    suggested_plan: Optional[PlanType] = None

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise LimitExceededError(
                self.reason or "Plan limit reached",
                current_count=self.current_count,
                limit=self.limit,
                suggested_plan=self.suggested_plan.value if self.suggested_plan else None,
            )


@dataclass(frozen=True)
class UsageInfo:
    plan: PlanType
    receipts_used: int
    receipts_limit: Optional[int]
    destinations_used: int
    destinations_limit: Optional[int]
    percent_receipts_used: Optional[int]
    percent_destinations_used: Optional[int]
    billing_period_start: dt.datetime
    billing_period_end: dt.datetime


def calendar_month_bounds(when: dt.datetime) -> Tuple[dt.datetime, dt.datetime]:
    start = dt.datetime(when.year, when.month, 1)
    if when.month == 12:
        end = dt.datetime(when.year + 1, 1, 1)
    else:
        end = dt.datetime(when.year, when.month + 1, 1)
    return start, end


def _percent(used: int, limit: Optional[int]) -> Optional[int]:
    if limit is None or limit <= 0:
        return None
    return round(used / limit * 100)


class AdmissionService:
    """Encapsulates plan limit queries and usage checks."""

    def get_limits(self, plan: PlanType | None) -> PlanLimits:
        return PLAN_LIMIT_MATRIX.get(plan or PlanType.FREE, PLAN_LIMIT_MATRIX[PlanType.FREE])

    async def _get_org(self, db: AsyncSession, org_id: str) -> Organisation:
        org = await db.get(Organisation, org_id)
        if org is None:
            raise NotFoundError("Organization not found")
        return org

    def billing_period(self, org: Organisation, when: Optional[dt.datetime] = None) -> Tuple[dt.datetime, dt.datetime]:
        """Active billing period: the subscription period when known, else the calendar month."""
        when = when or utcnow()
        start, end = org.billing_period_start, org.billing_period_end
        if start and end and start <= when < end:
            return start, end
        return calendar_month_bounds(when)

    # --- Counters -------------------------------------------------------
    async def count_period_receipts(
        self, db: AsyncSession, org: Organisation, when: Optional[dt.datetime] = None
    ) -> int:
        start, end = self.billing_period(org, when)
        q = select(func.count(Receipt.id)).where(
            Receipt.org_id == org.id,
            Receipt.status != ReceiptStatus.ARCHIVED,
            Receipt.created_at >= start,
            Receipt.created_at < end,
        )
        return int((await db.execute(q)).scalar() or 0)

    async def count_destinations(self, db: AsyncSession, org_id: str) -> int:
        q = select(func.count(Destination.id)).where(
            Destination.org_id == org_id,
            Destination.status != DestinationStatus.ARCHIVED,
        )
        return int((await db.execute(q)).scalar() or 0)

    # --- Decisions ------------------------------------------------------
    async def can_add_receipt(self, db: AsyncSession, org_id: str, when: Optional[dt.datetime] = None) -> LimitCheck:
        org = await self._get_org(db, org_id)
        limit = self.get_limits(org.plan).receipts_per_period
        used = await self.count_period_receipts(db, org, when)
        if limit is not None and used >= limit:
            return LimitCheck(
                allowed=False,
                current_count=used,
                limit=limit,
                reason=f"You've reached your monthly limit of {limit} receipts. Please upgrade to continue.",
                suggested_plan=PlanType.PRO if org.plan == PlanType.FREE else PlanType.BUSINESS,
            )
        return LimitCheck(allowed=True, current_count=used, limit=limit)

    async def can_add_destination(self, db: AsyncSession, org_id: str) -> LimitCheck:
        org = await self._get_org(db, org_id)
        limit = self.get_limits(org.plan).max_destinations
        used = await self.count_destinations(db, org_id)
        if limit is not None and used >= limit:
            plural = "" if limit == 1 else "s"
            return LimitCheck(
                allowed=False,
                current_count=used,
                limit=limit,
                reason=f"You've reached your limit of {limit} destination{plural}. Please upgrade to add more.",
                suggested_plan=PlanType.PRO,
            )
        return LimitCheck(allowed=True, current_count=used, limit=limit)

    # --- Usage reporting ------------------------------------------------
    async def get_usage(self, db: AsyncSession, org_id: str, when: Optional[dt.datetime] = None) -> UsageInfo:
        org = await self._get_org(db, org_id)
        limits = self.get_limits(org.plan)
        receipts_used = await self.count_period_receipts(db, org, when)
        destinations_used = await self.count_destinations(db, org_id)
        start, end = self.billing_period(org, when)
        return UsageInfo(
            plan=org.plan,
            receipts_used=receipts_used,
            receipts_limit=limits.receipts_per_period,
            destinations_used=destinations_used,
            destinations_limit=limits.max_destinations,
            percent_receipts_used=_percent(receipts_used, limits.receipts_per_period),
            percent_destinations_used=_percent(destinations_used, limits.max_destinations),
            billing_period_start=start,
            billing_period_end=end,
        )

    @staticmethod
    def warning_level(usage: UsageInfo) -> Optional[int]:
        pct = usage.percent_receipts_used
        if usage.receipts_limit is None or pct is None:
            return None
        for level in (100, 90, 80):
            if pct >= level:
                return level
        return None

    def upgrade_prompt(self, usage: UsageInfo) -> Optional[str]:
        level = self.warning_level(usage)
        if level is None:
            return None
        if level >= 100:
            if usage.plan == PlanType.FREE:
                return "You've used all 50 receipts this month. Upgrade to Pro for 500 receipts/month."
            if usage.plan == PlanType.PRO:
                return "You've used all 500 receipts this month. Upgrade to Business for unlimited receipts."
            return None
        if level >= 90:
            remaining = (usage.receipts_limit or 0) - usage.receipts_used
            return f"You have {remaining} receipt{'' if remaining == 1 else 's'} remaining this month."
        return f"You've used {usage.percent_receipts_used}% of your monthly receipts."


admission_service = AdmissionService()

__all__ = [
    "PlanLimits",
    "PLAN_LIMIT_MATRIX",
    "LimitCheck",
    "UsageInfo",
    "AdmissionService",
    "admission_service",
    "calendar_month_bounds",
]
