"""
Metering service: pre-flight authorization and post-flight usage recording.

A metered request flows through:

    API-key gate -> billing window -> usage ledger (get-or-create)
        -> entitlement check -> caller's action -> usage ledger (increment)

``authorize()`` never raises for an ordinary denial; it returns a
``MeteringDecision`` the route turns into a response. Store outages still
surface as ``TransientStoreError``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from billing_engine.billing.enforcement import EntitlementDecision, EntitlementEnforcer
from billing_engine.billing.plans import get_plan
from billing_engine.billing.usage_ledger import UsageLedger
from billing_engine.billing.window import BillingWindow, compute_billing_window
from billing_engine.errors.domain import LimitExceededError
from billing_engine.models.usage import UsageRecord
from billing_engine.models.user import User
from billing_engine.security.api_keys import ApiKeyGate
from billing_engine.utils import utcnow

logger = logging.getLogger(__name__)

__all__ = ["MeteringDecision", "MeteringService"]


@dataclass(frozen=True)
class MeteringDecision:
    ok: bool
    status: int
    error: Optional[str] = None
    user: Optional[User] = None
    scopes: Optional[List[str]] = None
    window: Optional[BillingWindow] = None
    usage: Optional[UsageRecord] = None
    entitlement: Optional[EntitlementDecision] = None

    def limit_error(self) -> LimitExceededError:
        e = self.entitlement
        return LimitExceededError(limit=e.limit, dimension=e.dimension, plan=e.plan,
                                  used=e.used, upgrade_to=e.upgrade_to)


class MeteringService:
    def __init__(self, gate=None, ledger=None, enforcer=None, clock=utcnow):
        self.gate = gate or ApiKeyGate()
        self.ledger = ledger or UsageLedger(clock=clock)
        self.enforcer = enforcer or EntitlementEnforcer()
        self.clock = clock

    def current_window(self, user: User, now: Optional[datetime] = None) -> BillingWindow:
        """Billing window for ``user`` at ``now``, aligned with any earlier usage record."""
        now = now or self.clock()
        plan = get_plan(user.plan_price_id or user.subscription_plan)
        period_end = user.subscription_current_period_end

        prior = None
        if period_end is not None and now < period_end:
            prior = self.ledger.latest_before(user.id, period_end)
        return compute_billing_window(user, now, plan, prior=prior)

    def current_usage(self, user: User, now: Optional[datetime] = None):
        """(window, record) for the user's current window, creating the record if needed."""
        window = self.current_window(user, now)
        return window, self.ledger.get_or_create(user.id, window.start, window.end)

    def authorize(self, raw_key: Optional[str], dimension: str = "api_calls",
                  required_scope: Optional[str] = None) -> MeteringDecision:
        gate = self.gate.authenticate(raw_key, required_scope=required_scope)
        if not gate.ok:
            return MeteringDecision(ok=False, status=gate.status, error=gate.error)
        return self.authorize_user(gate.user, dimension, scopes=gate.scopes)

    def authorize_user(self, user: User, dimension: str, scopes: Optional[List[str]] = None) -> MeteringDecision:
        """Entitlement check for an already authenticated user (JWT routes)."""
        now = self.clock()
        window, usage = self.current_usage(user, now)
        entitlement = self.enforcer.check(user, usage, dimension, now)

        if not entitlement.ok:
            logger.info(
                "Metered request denied",
                extra={"user_id": user.id, "dimension": dimension, "limit": entitlement.limit,
                       "used": entitlement.used, "plan": entitlement.plan},
            )
            return MeteringDecision(
                ok=False, status=429, error="limit_exceeded", user=user, scopes=scopes,
                window=window, usage=usage, entitlement=entitlement,
            )

        if entitlement.soft_warning:
            logger.info(
                "Usage approaching plan limit",
                extra={"user_id": user.id, "dimension": dimension, "limit": entitlement.limit,
                       "used": entitlement.used},
            )

        return MeteringDecision(
            ok=True, status=200, user=user, scopes=scopes,
            window=window, usage=usage, entitlement=entitlement,
        )

    def record(self, decision: MeteringDecision, dimension: str = "api_calls", amount: int = 1) -> UsageRecord:
        """Count a metered action after it succeeded."""
        if not decision.ok:
            raise ValueError("Cannot record usage for a denied request")
        window = decision.window
        return self.ledger.increment(decision.user.id, dimension, amount, window.start, window.end)
