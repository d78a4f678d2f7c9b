"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "meal_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-outbox-every-10-seconds": {
        "task": "app.workers.tasks.process_outbox_messages",
        "schedule": 10.0,
    },
    # משיכות ממתינות → שער ההעברות הבנקאיות
    "process-pending-withdrawals-every-minute": {
        "task": "app.workers.tasks.process_pending_withdrawals",
        "schedule": 60.0,
    },
    "settle-earnings-hourly": {
        "task": "app.workers.tasks.settle_earnings_sweep",
        "schedule": crontab(minute="5"),
    },
    # הזמנות שנתקעו ב-processing (webhook אבד)
    "reconcile-payments-every-5-minutes": {
        "task": "app.workers.tasks.reconcile_processing_payments",
        "schedule": 300.0,
    },
    "cleanup-old-messages-daily": {
        "task": "app.workers.tasks.cleanup_old_messages",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
