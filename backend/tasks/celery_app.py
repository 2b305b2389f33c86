from celery import Celery

from lifeline.config import get_settings

settings = get_settings()

celery_app = Celery(
    "lifeline",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "tasks.emergency_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "tasks.emergency_tasks.redispatch_pending_emergencies": {"queue": "emergency.dispatch"},  # HIGH priority
        "tasks.emergency_tasks.*": {"queue": "emergency.maintenance"},
    },
    beat_schedule={
        "redispatch-pending-emergencies": {
            "task": "tasks.emergency_tasks.redispatch_pending_emergencies",
            "schedule": settings.REDISPATCH_INTERVAL_SECONDS,
        },
        "expire-timed-out-emergencies": {
            "task": "tasks.emergency_tasks.expire_timed_out_emergencies",
            "schedule": settings.TIMEOUT_SWEEP_INTERVAL_SECONDS,
        },
        "purge-expired-emergencies": {
            "task": "tasks.emergency_tasks.purge_expired_emergencies",
            "schedule": settings.PURGE_INTERVAL_SECONDS,
        },
    },
)
