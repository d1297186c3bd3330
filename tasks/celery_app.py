"""
tasks/celery_app.py
Celery application instance — shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "mentorship_escrow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.escrow_tasks",
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

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_booking_notification": {"rate_limit": "20/s"},
    },

    # Routing: escrow jobs never wait behind an email backlog
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.escrow_tasks.*": {"queue": "escrow"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Auto-release holds whose review window closed; retry failed review releases
    "reconciliation-sweep": {
        "task": "tasks.escrow_tasks.run_reconciliation_sweep",
        "schedule": settings.RECONCILIATION_SWEEP_INTERVAL_SECONDS,
    },

    # Cancel unpaid bookings and free their slots
    "expire-pending-bookings": {
        "task": "tasks.escrow_tasks.expire_pending_bookings",
        "schedule": settings.HOUSEKEEPING_INTERVAL_SECONDS,
    },

    # Move finished sessions to COMPLETED so the review window opens
    "complete-elapsed-sessions": {
        "task": "tasks.escrow_tasks.complete_elapsed_sessions",
        "schedule": settings.HOUSEKEEPING_INTERVAL_SECONDS,
    },
}
