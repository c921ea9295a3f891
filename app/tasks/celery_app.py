from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging
from app.core.config import settings
from app.core.logging import configure_logging

# Initialize Celery app
celery_app = Celery(
    "planwise",
    broker=settings.REDIS_URL or "redis://localhost:6379/0",
    backend=settings.REDIS_URL or "redis://localhost:6379/0"
)

# Celery configurations
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=1200,
    task_soft_time_limit=1100,
)

# Periodic reconciliation (run with `celery -A app.tasks.celery_app beat`)
celery_app.conf.beat_schedule = {
    "process-subscription-cycle": {
        "task": "app.tasks.subscription_tasks.process_subscription_cycle",
        "schedule": settings.SUBSCRIPTION_CYCLE_INTERVAL_MINUTES * 60.0,
    },
    "reset-feature-usage": {
        "task": "app.tasks.subscription_tasks.reset_feature_usage",
        "schedule": crontab(minute=5, hour=0),
    },
}

@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()


# Explicitly include task modules so the worker always registers them
celery_app.conf.include = [
    "app.tasks.subscription_tasks",
]
