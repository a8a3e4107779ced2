"""
Entitlement enforcement.

Checks are advisory: callers check before the metered action and increment
after it succeeds, so two concurrent requests can each pass a check that
only one of them would pass serially. The overrun is bounded by the number
of concurrent requests; limits here are soft.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from billing_engine.billing.plans import plan_for_user
from billing_engine.errors.domain import LimitExceededError, ValidationError
from billing_engine.models.usage import USAGE_DIMENSIONS
from billing_engine.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitlementDecision:
    ok: bool
    limit: Optional[int]
    remaining: Optional[int]
    dimension: str
    plan: str
    used: int
    soft_warning: bool = False
    upgrade_to: Optional[str] = None


class EntitlementEnforcer:
    def check(self, user, usage_record, dimension: str, now: Optional[datetime] = None) -> EntitlementDecision:
        if dimension not in USAGE_DIMENSIONS:
            raise ValidationError(f"Unknown usage dimension: {dimension}", field="dimension")

        now = now or utcnow()
        plan = plan_for_user(user, now)
        limit = plan.limit_for(dimension)
        used = usage_record.used(dimension) if usage_record is not None else 0

        if limit is None:
            return EntitlementDecision(ok=True, limit=None, remaining=None, dimension=dimension,
                                       plan=plan.slug, used=used)

        soft_warning = (
            plan.soft_overage_percent is not None
            and used * 100 >= limit * plan.soft_overage_percent
        )
        return EntitlementDecision(
            ok=used < limit,
            limit=limit,
            remaining=max(limit - used, 0),
            dimension=dimension,
            plan=plan.slug,
            used=used,
            soft_warning=soft_warning,
            upgrade_to=plan.upgrade_to,
        )

    def require(self, user, usage_record, dimension: str, now: Optional[datetime] = None) -> EntitlementDecision:
        decision = self.check(user, usage_record, dimension, now)
        if not decision.ok:
            logger.info(
                "Usage limit reached",
                extra={"user_id": user.id, "dimension": dimension, "limit": decision.limit,
                       "used": decision.used, "plan": decision.plan},
            )
            raise LimitExceededError(
                limit=decision.limit,
                dimension=dimension,
                plan=decision.plan,
                used=decision.used,
                upgrade_to=decision.upgrade_to,
            )
        return decision
