from datetime import datetime
from unittest.mock import patch

import pytest

from billing_engine.billing.enforcement import EntitlementEnforcer
from billing_engine.billing.plans import PLANS, PlanLimits
from billing_engine.billing.usage_ledger import UsageLedger
from billing_engine.billing.window import compute_billing_window
from billing_engine.errors import LimitExceededError, ValidationError
from billing_engine.models import UsageRecord, User


def usage(**counters):
    return UsageRecord(**{"api_calls": 0, "items_created": 0, "storage_mb": 0, **counters})


@pytest.fixture()
def enforcer():
    return EntitlementEnforcer()


class TestCheck:
    def test_one_below_limit_is_allowed(self, app, enforcer, now):
        decision = enforcer.check(User(subscription_status="none"), usage(items_created=99), "items_created", now)
        assert decision.ok is True
        assert decision.limit == 100
        assert decision.remaining == 1

    def test_at_limit_is_denied(self, app, enforcer, now):
        decision = enforcer.check(User(subscription_status="none"), usage(items_created=100), "items_created", now)
        assert decision.ok is False
        assert decision.remaining == 0
        assert decision.upgrade_to == "pro_monthly"

    def test_missing_record_counts_as_zero(self, app, enforcer, now):
        decision = enforcer.check(User(subscription_status="none"), None, "api_calls", now)
        assert decision.ok is True
        assert decision.used == 0

    def test_paid_plan_limits(self, app, enforcer, now):
        user = User(subscription_status="active", plan_price_id="price_pro_monthly")
        decision = enforcer.check(user, usage(api_calls=5000), "api_calls", now)
        assert decision.ok is True
        assert decision.plan == "pro_monthly"
        assert decision.limit == 100000

    def test_past_due_user_falls_back_to_free(self, app, enforcer, now):
        user = User(subscription_status="past_due", plan_price_id="price_enterprise")
        decision = enforcer.check(user, usage(api_calls=1000), "api_calls", now)
        assert decision.ok is False
        assert decision.plan == "free"

    def test_unlimited_dimension(self, app, enforcer, now):
        unlimited = PlanLimits(slug="free", name="Free", max_api_calls=None,
                               max_items_created=None, max_storage_mb=None)
        with patch.dict(PLANS, {"free": unlimited}):
            decision = enforcer.check(User(subscription_status="none"), usage(api_calls=10 ** 9), "api_calls", now)
        assert decision.ok is True
        assert decision.limit is None
        assert decision.remaining is None

    @pytest.mark.parametrize("used, warned", [(799, False), (800, True), (999, True)])
    def test_soft_warning_threshold(self, app, enforcer, now, used, warned):
        decision = enforcer.check(User(subscription_status="none"), usage(api_calls=used), "api_calls", now)
        assert decision.ok is True
        assert decision.soft_warning is warned

    def test_unknown_dimension(self, app, enforcer, now):
        with pytest.raises(ValidationError):
            enforcer.check(User(subscription_status="none"), usage(), "seats", now)


class TestRequire:
    def test_raises_with_limit_details(self, app, enforcer, now):
        with pytest.raises(LimitExceededError) as exc:
            enforcer.require(User(id="u-1", subscription_status="none"), usage(api_calls=1000), "api_calls", now)

        error = exc.value
        assert error.limit == 1000
        assert error.dimension == "api_calls"
        assert error.plan == "free"
        assert error.upgrade_to == "pro_monthly"
        assert error.status_code == 429

    @pytest.mark.slow
    def test_trial_user_gets_exactly_the_free_allowance(self, make_user, enforcer, now):
        user = make_user(
            subscription_status="trialing",
            has_used_trial=True,
            trial_start=datetime(2024, 2, 1),
            trial_end=datetime(2024, 2, 15),
        )
        window = compute_billing_window(user, now)
        ledger = UsageLedger()
        record = ledger.get_or_create(user.id, window.start, window.end)

        for _ in range(1000):
            enforcer.require(user, record, "api_calls", now)
            record = ledger.increment(user.id, "api_calls", 1, window.start, window.end)

        with pytest.raises(LimitExceededError) as exc:
            enforcer.require(user, record, "api_calls", now)
        assert exc.value.limit == 1000
        assert record.api_calls == 1000
