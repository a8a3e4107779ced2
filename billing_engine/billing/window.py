"""
Billing window calculation.

Pure functions of a user snapshot and ``now``; no I/O. All datetimes are
naive UTC.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from billing_engine.billing.plans import PlanLimits, get_plan


@dataclass(frozen=True)
class BillingWindow:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @property
    def key(self):
        return self.start, self.end


def add_months(anchor: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the end of shorter months."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def rolling_month_window(anchor: datetime, now: datetime, months: int = 1) -> BillingWindow:
    """
    The ``months``-long window containing ``now`` in the series
    ``anchor + k*months``. Every boundary is computed from the anchor, so a
    31st anchor yields Feb 28/29 then Mar 31 rather than drifting.
    """
    k = ((now.year - anchor.year) * 12 + (now.month - anchor.month)) // months
    while add_months(anchor, k * months) > now:
        k -= 1
    while add_months(anchor, (k + 1) * months) <= now:
        k += 1
    return BillingWindow(start=add_months(anchor, k * months), end=add_months(anchor, (k + 1) * months))


def compute_billing_window(user, now: datetime, plan: Optional[PlanLimits] = None, prior=None) -> BillingWindow:
    """
    Usage window for ``user`` at ``now``.

    1. An unexpired trial spans ``[trial_start or created_at, trial_end)``.
       Stripe reports the trial end as the period end while trialing, so
       this is checked first.
    2. A current period end in the future (including the grace period of a
       canceled subscription) ends the window; it starts one plan interval
       earlier, or where a prior usage record inside that span left off.
       When that start is still ahead of ``now`` (a period longer than the
       plan interval), the window rolls back from the period end instead.
    3. Otherwise a rolling month anchored to the last known period end
       (lapsed subscriptions) or to the account creation time.
    """
    if plan is None:
        plan = get_plan(user.plan_price_id or user.subscription_plan)

    if user.subscription_status == "trialing" and user.trial_end is not None and now < user.trial_end:
        trial_start = user.trial_start or user.created_at
        if trial_start <= now:
            return BillingWindow(start=trial_start, end=user.trial_end)

    period_end = user.subscription_current_period_end
    if period_end is not None and now < period_end:
        start = add_months(period_end, -plan.interval_months)
        if start > now:
            return rolling_month_window(period_end, now, plan.interval_months)
        if prior is not None and start < prior.period_end <= period_end:
            aligned = prior.period_start if prior.period_end == period_end else prior.period_end
            if aligned <= now:
                start = aligned
        return BillingWindow(start=start, end=period_end)

    anchor = period_end or user.created_at
    return rolling_month_window(anchor, now)
