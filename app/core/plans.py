"""
Subscription Plans
==================

Product identifier to plan mapping and plan cadence arithmetic.
"""

import calendar
from datetime import datetime, timedelta
from typing import Optional

from app.config import settings
from app.models.subscription import SubscriptionPlan


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def plan_expiry(plan: SubscriptionPlan, start: datetime) -> Optional[datetime]:
    """
    Expiry for one billing period of ``plan`` starting at ``start``.

    Lifetime (and no plan) never expires.
    """
    if plan == SubscriptionPlan.MONTHLY:
        return add_months(start, 1)
    if plan == SubscriptionPlan.YEARLY:
        return add_months(start, 12)
    return None


class PlanCatalog:
    """
    Maps store product identifiers to plans.

    Exact matches against the configured product ids win; otherwise
    store-specific identifiers such as ``com.example.app.monthly`` are
    classified by keyword.
    """

    def __init__(
        self,
        monthly_id: Optional[str] = None,
        yearly_id: Optional[str] = None,
        lifetime_id: Optional[str] = None,
        trial_period_days: Optional[int] = None,
    ):
        self.product_ids = {
            monthly_id or settings.MONTHLY_PLAN_ID: SubscriptionPlan.MONTHLY,
            yearly_id or settings.YEARLY_PLAN_ID: SubscriptionPlan.YEARLY,
            lifetime_id or settings.LIFETIME_PLAN_ID: SubscriptionPlan.LIFETIME,
        }
        self.trial_period = timedelta(
            days=trial_period_days
            if trial_period_days is not None
            else settings.TRIAL_PERIOD_DAYS
        )

    def plan_for(self, product_id: Optional[str]) -> Optional[SubscriptionPlan]:
        """Return the plan for a product id, or None if it is not ours."""
        if not product_id:
            return None

        if product_id in self.product_ids:
            return self.product_ids[product_id]

        pid = product_id.lower()
        if "lifetime" in pid:
            return SubscriptionPlan.LIFETIME
        if "annual" in pid or "yearly" in pid:
            return SubscriptionPlan.YEARLY
        if "monthly" in pid:
            return SubscriptionPlan.MONTHLY
        return None
