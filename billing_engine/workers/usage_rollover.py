# billing_engine/workers/usage_rollover.py
"""
Pre-creates each user's usage record for the window they are currently in.

Rollover itself is implicit (a new window key starts a fresh record); this
job only makes sure the first metered request of a period finds its row
already in place. It is pure maintenance and safe to run at any time.
"""

from celery.utils.log import get_task_logger
from flask import current_app

from billing_engine.errors.domain import TransientStoreError
from billing_engine.models.user import User
from billing_engine.services.metering_service import MeteringService
from billing_engine.utils import utcnow
from billing_engine.workers.celery_app import BillingTask, celery_app

logger = get_task_logger(__name__)


def run_usage_rollover(page_size=100, now=None):
    """Walk users in id order, a page at a time, and get-or-create their window record."""
    now = now or utcnow()
    service = MeteringService()
    summary = {"processed": 0, "created": 0, "failed": 0}
    last_id = None

    while True:
        query = User.query.order_by(User.id)
        if last_id is not None:
            query = query.filter(User.id > last_id)
        users = query.limit(page_size).all()
        if not users:
            break

        for user in users:
            last_id = user.id
            try:
                window = service.current_window(user, now)
                existed = service.ledger.find(user.id, window.start, window.end) is not None
                service.ledger.get_or_create(user.id, window.start, window.end)
            except TransientStoreError as e:
                summary["failed"] += 1
                logger.error("Usage rollover failed for user", extra={"user_id": user.id, "error": str(e)})
                continue
            summary["processed"] += 1
            if not existed:
                summary["created"] += 1

    logger.info("Usage rollover finished", extra=summary)
    if summary["failed"] and not summary["processed"]:
        raise TransientStoreError("Usage rollover could not reach the store")
    return summary


@celery_app.task(
    bind=True,
    base=BillingTask,
    name="billing_engine.workers.usage_rollover.prewarm_usage_windows",
)
def prewarm_usage_windows(self, page_size=None):
    return run_usage_rollover(page_size or current_app.config.get("USAGE_ROLLOVER_PAGE_SIZE", 100))
