from celery import Celery
from celery.schedules import crontab

from orca.core.config import settings

celery_app = Celery(
    "orca",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["orca.workers.tasks"],
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,

    task_routes={
        "orca.workers.tasks.process_recurring_payments": {"queue": "billing"},
        "orca.workers.tasks.*": {"queue": "default"},
    },

    # Beat schedule (periodic tasks)
    beat_schedule={
        "process-recurring-payments": {
            "task": "orca.workers.tasks.process_recurring_payments",
            "schedule": crontab(hour=6, minute=0),  # 6:00 AM UTC
        },
        "mark-overdue-invoices": {
            "task": "orca.workers.tasks.mark_overdue_invoices",
            "schedule": crontab(hour=1, minute=0),
        },
        "advance-collection-stages": {
            "task": "orca.workers.tasks.advance_collection_stages",
            "schedule": crontab(hour=7, minute=0),
        },
        "check-broken-promises": {
            "task": "orca.workers.tasks.check_broken_promises",
            "schedule": crontab(hour=2, minute=0),
        },
        "send-collection-reminders": {
            "task": "orca.workers.tasks.send_collection_reminders",
            "schedule": crontab(hour=9, minute=0, day_of_week="1-5"),  # weekdays
        },
        "expire-payment-links-and-credits": {
            "task": "orca.workers.tasks.expire_payment_links_and_credits",
            "schedule": crontab(hour=0, minute=30),
        },
    },
)
