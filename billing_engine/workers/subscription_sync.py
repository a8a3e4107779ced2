# billing_engine/workers/subscription_sync.py
from celery.utils.log import get_task_logger

from billing_engine.billing.provider import get_provider_client
from billing_engine.billing.state_machine import SubscriptionReconciler
from billing_engine.errors.domain import NotFoundError
from billing_engine.extensions import db
from billing_engine.models.user import User
from billing_engine.workers.celery_app import BillingTask, celery_app

logger = get_task_logger(__name__)


def sync_user_subscription(user_id, provider=None):
    """Re-read one user's subscription from Stripe and reconcile it."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    reconciler = SubscriptionReconciler(provider=provider or get_provider_client())
    outcome = reconciler.sync_from_provider(user)
    logger.info(
        "Subscription sync complete",
        extra={"user_id": user_id, "action": outcome.action.value, "changed_fields": sorted(outcome.changes)},
    )
    return outcome


@celery_app.task(
    bind=True,
    base=BillingTask,
    name="billing_engine.workers.subscription_sync.sync_subscription",
)
def sync_subscription(self, user_id):
    outcome = sync_user_subscription(user_id)
    return {"user_id": user_id, "action": outcome.action.value, "changed": sorted(outcome.changes)}
