"""
Keystone Backend — Celery Application
=====================================

Broker: Redis (settings.redis_url). Queues:
    emails    transactional e-mail
    uploads   post-upload processing
    default   maintenance (audit retention)

Worker:
    celery -A app.jobs.celery_app worker -Q emails,uploads,default
Beat (retention schedule):
    celery -A app.jobs.celery_app beat
"""

from celery import Celery
from celery.schedules import crontab

from app.config import Settings, settings

DEFAULT_BROKER = "redis://localhost:6379/0"

EMAIL_QUEUE = "emails"
UPLOAD_QUEUE = "uploads"
DEFAULT_QUEUE = "default"


def create_celery_app(config: Settings) -> Celery:
    broker = config.redis_url or DEFAULT_BROKER
    app = Celery("keystone", broker=broker, backend=broker, include=["app.jobs.tasks"])
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_default_queue=DEFAULT_QUEUE,
        task_routes={
            "app.jobs.tasks.send_email": {"queue": EMAIL_QUEUE},
            "app.jobs.tasks.send_welcome_email": {"queue": EMAIL_QUEUE},
            "app.jobs.tasks.process_upload": {"queue": UPLOAD_QUEUE},
            "app.jobs.tasks.prune_audit_logs": {"queue": DEFAULT_QUEUE},
        },
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_ignore_result=True,
        beat_schedule={
            "prune-audit-logs-daily": {
                "task": "app.jobs.tasks.prune_audit_logs",
                "schedule": crontab(hour=3, minute=0),
                "options": {"queue": DEFAULT_QUEUE},
            },
        },
    )
    return app


celery_app = create_celery_app(settings)
