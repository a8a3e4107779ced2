from billing_engine.models.api_key import ApiKey
from billing_engine.models.usage import USAGE_DIMENSIONS, UsageRecord
from billing_engine.models.user import SUBSCRIPTION_STATUSES, User
from billing_engine.models.webhook_event import WebhookEvent

__all__ = [
    "ApiKey",
    "SUBSCRIPTION_STATUSES",
    "USAGE_DIMENSIONS",
    "UsageRecord",
    "User",
    "WebhookEvent",
]
