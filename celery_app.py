"""Celery application configuration for the notification pipeline."""

from celery import Celery
from celery.schedules import crontab

from src.config import settings

celery = Celery("notification_pipeline")

celery.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # --- Queue routing per job type ---
    task_routes={
        "src.modules.pipeline.tasks.relay_outbox": {"queue": "event-outbox"},
        "src.modules.pipeline.tasks.retry_failed_outbox_events": {"queue": "event-outbox"},
        "src.modules.pipeline.tasks.create_batches": {"queue": "notifications"},
        "src.modules.pipeline.tasks.dispatch_batches": {"queue": "notifications"},
        "src.modules.pipeline.tasks.recover_stalled": {"queue": "notifications"},
        "src.modules.pipeline.tasks.cleanup_pipeline": {"queue": "maintenance"},
    },
    # --- Reliability settings ---
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24 hours
    # --- Broker transport options (Redis reliability) ---
    broker_transport_options={
        "max_retries": 10,
        "interval_start": 0.2,
        "interval_step": 0.5,
        "interval_max": 5.0,
        "retry_on_timeout": True,
        "visibility_timeout": 3600,
    },
    # --- Beat schedule ---
    beat_schedule={
        "relay-event-outbox": {
            "task": "src.modules.pipeline.tasks.relay_outbox",
            "schedule": settings.outbox_poll_seconds,
        },
        "create-notification-batches": {
            "task": "src.modules.pipeline.tasks.create_batches",
            "schedule": settings.batcher_poll_seconds,
        },
        "dispatch-notification-batches": {
            "task": "src.modules.pipeline.tasks.dispatch_batches",
            "schedule": settings.dispatcher_poll_seconds,
        },
        "recover-stalled-work": {
            "task": "src.modules.pipeline.tasks.recover_stalled",
            "schedule": settings.stall_scan_poll_seconds,
        },
        "cleanup-pipeline-daily": {
            "task": "src.modules.pipeline.tasks.cleanup_pipeline",
            "schedule": crontab(hour=2, minute=0),
        },
    },
)

celery.autodiscover_tasks(["src.modules.pipeline"])
