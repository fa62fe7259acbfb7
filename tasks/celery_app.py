"""
tasks/celery_app.py
Celery application instance shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "al_abraar",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.booking_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    task_routes={
        "tasks.booking_tasks.send_lesson_reminders": {"queue": "notifications"},
        "tasks.booking_tasks.release_expired_reservations": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Drop checkout holds that expired without becoming a booking
    "release-expired-reservations": {
        "task": "tasks.booking_tasks.release_expired_reservations",
        "schedule": 300,  # every 5 minutes
    },

    # Remind students of lessons starting in roughly a day
    "send-lesson-reminders": {
        "task": "tasks.booking_tasks.send_lesson_reminders",
        "schedule": crontab(minute=0),  # top of every hour
    },
}
