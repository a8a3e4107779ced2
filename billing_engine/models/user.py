import uuid

from billing_engine.extensions import db
from billing_engine.utils import utcnow


SUBSCRIPTION_STATUSES = (
    "none",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "incomplete",
    "incomplete_expired",
    "paused",
)


class User(db.Model):
    __tablename__ = "users"

    # ========== IDENTIFICATION ==========
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    role = db.Column(db.String(50), nullable=False, default="user")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # ========== SUBSCRIPTION & BILLING ==========
    # Written only by the subscription reconciler.
    stripe_customer_id = db.Column(db.String(100), unique=True, nullable=True)
    stripe_subscription_id = db.Column(db.String(100), unique=True, nullable=True)
    subscription_status = db.Column(
        db.Enum(*SUBSCRIPTION_STATUSES, name="subscription_status", native_enum=False),
        nullable=False,
        default="none",
    )
    subscription_current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)
    plan_price_id = db.Column(db.String(100), nullable=True)
    subscription_plan = db.Column(db.String(50), nullable=True)
    last_payment_at = db.Column(db.DateTime, nullable=True)

    # ========== TRIAL ==========
    has_used_trial = db.Column(db.Boolean, nullable=False, default=False)
    trial_start = db.Column(db.DateTime, nullable=True)
    trial_end = db.Column(db.DateTime, nullable=True)

    usage_records = db.relationship("UsageRecord", back_populates="user", lazy="dynamic")
    api_keys = db.relationship("ApiKey", back_populates="user", lazy="dynamic")

    def has_active_subscription(self, now=None):
        """
        Paid access is live while active or trialing, and through the grace
        period of a canceled subscription until its period end.
        """
        now = now or utcnow()
        if self.subscription_status in ("active", "trialing"):
            return True
        if self.subscription_status == "canceled":
            period_end = self.subscription_current_period_end
            return period_end is not None and now < period_end
        return False

    def __repr__(self):
        return f"<User {self.email} status={self.subscription_status}>"
