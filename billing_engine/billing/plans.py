"""
Plan limit table.

Plans are keyed by slug; Stripe price ids map onto slugs through
configuration so the same table serves test and live mode.
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional

from flask import current_app, has_app_context


@dataclass(frozen=True)
class PlanLimits:
    slug: str
    name: str
    max_api_calls: Optional[int]
    max_items_created: Optional[int]
    max_storage_mb: Optional[int]
    interval_months: int = 1
    soft_overage_percent: Optional[int] = 80
    upgrade_to: Optional[str] = None

    def limit_for(self, dimension: str) -> Optional[int]:
        """Limit for a usage dimension; ``None`` means unlimited."""
        return getattr(self, f"max_{dimension}")


FREE_PLAN = "free"

PLANS: Dict[str, PlanLimits] = {
    "free": PlanLimits(
        slug="free",
        name="Free",
        max_api_calls=1000,
        max_items_created=100,
        max_storage_mb=100,
        interval_months=1,
        upgrade_to="pro_monthly",
    ),
    "pro_monthly": PlanLimits(
        slug="pro_monthly",
        name="Pro (monthly)",
        max_api_calls=100000,
        max_items_created=5000,
        max_storage_mb=1000,
        interval_months=1,
        upgrade_to="enterprise",
    ),
    "pro_yearly": PlanLimits(
        slug="pro_yearly",
        name="Pro (yearly)",
        max_api_calls=100000,
        max_items_created=5000,
        max_storage_mb=1000,
        interval_months=12,
        upgrade_to="enterprise",
    ),
    "enterprise": PlanLimits(
        slug="enterprise",
        name="Enterprise",
        max_api_calls=1000000,
        max_items_created=50000,
        max_storage_mb=10000,
        interval_months=1,
        soft_overage_percent=90,
    ),
}

_PRICE_CONFIG_KEYS = {
    "STRIPE_PRICE_PRO_MONTHLY": ("pro_monthly", "price_pro_monthly"),
    "STRIPE_PRICE_PRO_YEARLY": ("pro_yearly", "price_pro_yearly"),
    "STRIPE_PRICE_ENTERPRISE": ("enterprise", "price_enterprise"),
}


def price_map() -> Dict[str, str]:
    """Stripe price id -> plan slug, from app config when available."""
    mapping = {}
    for key, (slug, default) in _PRICE_CONFIG_KEYS.items():
        if has_app_context():
            price_id = current_app.config.get(key) or default
        else:
            price_id = os.getenv(key, default)
        mapping[price_id] = slug
    return mapping


def plan_slug_for(identifier: Optional[str]) -> str:
    if not identifier:
        return FREE_PLAN
    slug = price_map().get(identifier)
    if slug:
        return slug
    if identifier in PLANS:
        return identifier
    return FREE_PLAN


def get_plan(identifier: Optional[str]) -> PlanLimits:
    """Look up by price id first, then by slug. Unknown identifiers fall back to free."""
    return PLANS[plan_slug_for(identifier)]


def plan_for_user(user, now=None) -> PlanLimits:
    """Users without an active subscription are held to the free plan."""
    if not user.has_active_subscription(now):
        return PLANS[FREE_PLAN]
    return get_plan(user.plan_price_id or user.subscription_plan)
