"""
tasks/celery_app.py
Celery application instance shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=2

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "seva_counter",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.slot_tasks"],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.BUSINESS_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the run
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_routes={
        "tasks.slot_tasks.*": {"queue": "default"},
    },
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Keep SLOT_HORIZON_DAYS of slots materialized ahead of the counters
    # Runs daily at 00:30 temple time
    "generate-rolling-slots": {
        "task": "tasks.slot_tasks.generate_rolling_slots",
        "schedule": crontab(hour=0, minute=30),
    },

    # Mark unpaid bookings whose slot has ended as NO_SHOW
    "sweep-unpaid-no-shows": {
        "task": "tasks.slot_tasks.sweep_unpaid_no_shows",
        "schedule": 900,  # every 15 minutes
    },
}
