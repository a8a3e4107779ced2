from billing_engine.extensions import db
from billing_engine.utils import isoformat, utcnow


USAGE_DIMENSIONS = ("api_calls", "items_created", "storage_mb")


class UsageRecord(db.Model):
    """Per-user counters for one billing window. Never deleted; the next window starts a new row."""

    __tablename__ = "usage_records"
    __table_args__ = (
        db.UniqueConstraint("user_id", "period_start", "period_end", name="uq_usage_user_period"),
        db.CheckConstraint("api_calls >= 0", name="ck_usage_api_calls_non_negative"),
        db.CheckConstraint("items_created >= 0", name="ck_usage_items_non_negative"),
        db.CheckConstraint("storage_mb >= 0", name="ck_usage_storage_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)

    api_calls = db.Column(db.Integer, nullable=False, default=0)
    items_created = db.Column(db.Integer, nullable=False, default=0)
    storage_mb = db.Column(db.Integer, nullable=False, default=0)

    last_updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    user = db.relationship("User", back_populates="usage_records")

    def used(self, dimension):
        return getattr(self, dimension) or 0

    def to_dict(self):
        return {
            "apiCalls": self.api_calls,
            "itemsCreated": self.items_created,
            "storageMb": self.storage_mb,
            "periodStart": isoformat(self.period_start),
            "periodEnd": isoformat(self.period_end),
            "lastUpdatedAt": isoformat(self.last_updated_at),
        }

    def __repr__(self):
        return f"<UsageRecord user={self.user_id} {self.period_start}..{self.period_end}>"
