from billing_engine.extensions import db
from billing_engine.utils import utcnow


WEBHOOK_STATUSES = ("processed", "unchanged", "ignored", "conflict", "invalid")

# Statuses that make a redelivery of the same event id a no-op.
TERMINAL_STATUSES = ("processed", "unchanged", "ignored")


class WebhookEvent(db.Model):
    """Audit ledger of every provider webhook delivery, keyed by event id."""

    __tablename__ = "webhook_events"

    event_id = db.Column(db.String(255), primary_key=True)
    event_type = db.Column(db.String(100), nullable=False)
    status = db.Column(
        db.Enum(*WEBHOOK_STATUSES, name="webhook_event_status", native_enum=False),
        nullable=False,
    )
    user_id = db.Column(db.String(36), nullable=True, index=True)
    error = db.Column(db.Text, nullable=True)
    received_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<WebhookEvent {self.event_id} {self.event_type} {self.status}>"
