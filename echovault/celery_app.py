"""Celery application instance shared across the backend.

Start a worker and the beat scheduler with:
    celery -A echovault.celery_app worker -Q notify -l info --concurrency=2
    celery -A echovault.celery_app beat -l info
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("echovault", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "echovault.workers.notifier.*": {"queue": "notify"},
}

# Beat schedule: evaluate conditions and send owner reminders every minute
celery_app.conf.beat_schedule = {
    "evaluate-due-conditions": {
        "task": "echovault.workers.notifier.dispatch_due",
        "schedule": settings.EVALUATOR_INTERVAL_SECONDS,
    },
    "send-due-reminders": {
        "task": "echovault.workers.notifier.send_reminders",
        "schedule": settings.REMINDER_INTERVAL_SECONDS,
    },
}

# --- Ensure tasks are registered ---
import echovault.workers.notifier  # noqa: E402,F401
