from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "prewarm-usage-windows-hourly": {
        "task": "billing_engine.workers.usage_rollover.prewarm_usage_windows",
        "schedule": crontab(minute=5, hour="*/1"),
    },
}
