"""
Celery application factory.

Configures broker, backend, serialization, limits and the beat schedule.
"""
from celery import Celery
from celery.schedules import crontab

from mentorsub.core.config import settings

celery_app = Celery("mentorsub")

celery_app.conf.update(
    # Broker / Backend
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    # Serialization
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Reliability
    broker_connection_retry_on_startup=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Limits
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    # Results
    result_expires=3600,
    # Beat schedule file path (writeable in containers)
    beat_schedule_filename="/tmp/celerybeat-schedule",
)

# Register task modules explicitly
celery_app.conf.include = [
    "mentorsub.workers.tasks.billing_tasks",
    "mentorsub.workers.tasks.provisioning_tasks",
]

# Make sure every SQLAlchemy model is mapped before any task runs.
import mentorsub.models  # noqa: F401, E402

# Registers the after_commit session listeners in worker processes.
import mentorsub.core.side_effects  # noqa: F401, E402

# Beat schedule - periodic billing jobs
celery_app.conf.beat_schedule = {
    "reconcile-subscriptions": {
        "task": "mentorsub.workers.tasks.billing_tasks.reconcile_subscriptions",
        "schedule": settings.RECONCILE_INTERVAL_MINUTES * 60,
    },
    "check-expiring-subscriptions": {
        "task": "mentorsub.workers.tasks.billing_tasks.check_expiring_subscriptions",
        "schedule": crontab(hour=settings.EXPIRY_CHECK_HOUR, minute=0),
    },
}
