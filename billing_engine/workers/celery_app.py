# billing_engine/workers/celery_app.py
import os

from celery import Celery, Task
from celery.signals import setup_logging
from celery.utils.log import get_task_logger
from kombu import Queue

from billing_engine.errors.domain import ProviderUnavailableError, TransientStoreError
from billing_engine.logging_config import configure_logging_for_non_flask
from billing_engine.workers.celerybeat import CELERY_BEAT_SCHEDULE

logger = get_task_logger(__name__)

_DEFAULT_BROKER = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))

celery_app = Celery(
    "billing_engine",
    broker=_DEFAULT_BROKER,
    backend=os.getenv("CELERY_RESULT_BACKEND", _DEFAULT_BROKER),
    include=[
        "billing_engine.workers.usage_rollover",
        "billing_engine.workers.subscription_sync",
    ],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Reliability settings
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Retry behavior
    task_default_retry_delay=5,

    # Routing
    task_default_queue="default",
    task_queues=(
        Queue("default"),
        Queue("maintenance"),
    ),
    task_routes={
        "billing_engine.workers.usage_rollover.*": {"queue": "maintenance"},
        "billing_engine.workers.subscription_sync.*": {"queue": "maintenance"},
    },

    # Time limits
    task_time_limit=300,
    task_soft_time_limit=240,

    beat_schedule=CELERY_BEAT_SCHEDULE,
)


class BillingTask(Task):
    """Runs inside the Flask app context and retries only retryable failures."""

    abstract = True

    autoretry_for = (TransientStoreError, ProviderUnavailableError)
    retry_kwargs = {"max_retries": 5}
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True

    flask_app = None

    def __call__(self, *args, **kwargs):
        if self.flask_app is None:
            raise RuntimeError("Celery is not bound to a Flask app; call init_celery(app) first")
        with self.flask_app.app_context():
            return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Task failed",
            extra={
                "task": self.name,
                "task_id": task_id,
                "error": str(exc),
            },
        )


def init_celery(app):
    """Bind the Celery app to a Flask app and its configuration."""
    celery_app.conf.update(app.config.get("CELERY", {}))
    BillingTask.flask_app = app
    app.extensions["celery"] = celery_app
    return celery_app


@setup_logging.connect
def configure_worker_logging(**kwargs):
    # Keep Celery from replacing the JSON handlers on the root logger.
    configure_logging_for_non_flask()
