"""
Keystone Backend — Background Tasks
===================================

What:  Work that should not hold up a request: transactional e-mail, post-upload
       processing and audit-log retention.
How:   Celery tasks are synchronous; each one drives a small coroutine with
       asyncio.run so it can reuse the async services the API uses. The
       coroutines are module-level so they can be exercised without a broker.

Retries:
    E-mail delivery retries provider failures (BadGatewayError) with
    exponential backoff, at most 5 attempts.
"""

import asyncio
from typing import Any, Dict, Optional

from celery.utils.log import get_task_logger

from app.config import Settings, settings
from app.database import Database
from app.exceptions import BadGatewayError
from app.jobs.celery_app import celery_app
from app.models.audit_log import RETENTION_DAYS
from app.services.audit_service import AuditService
from app.services.email_service import EmailService
from app.services.storage_service import StorageService

logger = get_task_logger(__name__)


async def deliver_email(
    config: Settings,
    to: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
    service: Optional[EmailService] = None,
) -> None:
    email = service or EmailService(config)
    try:
        await email.send_email(to, subject, html, text)
    finally:
        if service is None:
            await email.close()


async def deliver_welcome_email(
    config: Settings,
    to: str,
    name: Optional[str] = None,
    service: Optional[EmailService] = None,
) -> None:
    email = service or EmailService(config)
    try:
        await email.send_welcome_email(to, name)
    finally:
        if service is None:
            await email.close()


async def inspect_upload(
    config: Settings,
    key: str,
    user_id: str,
    storage: Optional[StorageService] = None,
) -> Dict[str, Any]:
    """Confirms the object landed in the bucket; the hook for any further processing."""
    if storage is None and not config.features.s3:
        logger.info("Upload %s for user %s processed (storage not configured)", key, user_id)
        return {"key": key, "exists": None}

    storage = storage or StorageService(config)
    exists = await storage.object_exists(key)
    if exists:
        logger.info("Upload %s for user %s processed", key, user_id)
    else:
        logger.warning("Upload %s for user %s not found in bucket %s", key, user_id, storage.bucket)
    return {"key": key, "exists": exists}


async def prune_audit(config: Settings, days_to_keep: int = RETENTION_DAYS) -> int:
    database = Database(config)
    await database.connect()
    try:
        async with database.session() as session:
            deleted = await AuditService(session).cleanup(days_to_keep)
            await session.commit()
    finally:
        await database.disconnect()
    logger.info("Pruned %d audit entries older than %d days", deleted, days_to_keep)
    return deleted


@celery_app.task(
    bind=True,
    name="app.jobs.tasks.send_email",
    max_retries=5,
    autoretry_for=(BadGatewayError,),
    retry_backoff=True,
    retry_backoff_max=600,
    ignore_result=True,
)
def send_email(self, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
    logger.info("Sending e-mail to %s (attempt %d)", to, self.request.retries + 1)
    asyncio.run(deliver_email(settings, to, subject, html, text))


@celery_app.task(
    bind=True,
    name="app.jobs.tasks.send_welcome_email",
    max_retries=5,
    autoretry_for=(BadGatewayError,),
    retry_backoff=True,
    retry_backoff_max=600,
    ignore_result=True,
)
def send_welcome_email(self, to: str, name: Optional[str] = None) -> None:
    logger.info("Sending welcome e-mail to %s (attempt %d)", to, self.request.retries + 1)
    asyncio.run(deliver_welcome_email(settings, to, name))


@celery_app.task(name="app.jobs.tasks.process_upload", max_retries=3, ignore_result=True)
def process_upload(key: str, user_id: str) -> Dict[str, Any]:
    return asyncio.run(inspect_upload(settings, key, user_id))


@celery_app.task(name="app.jobs.tasks.prune_audit_logs", ignore_result=True)
def prune_audit_logs(days_to_keep: int = RETENTION_DAYS) -> int:
    return asyncio.run(prune_audit(settings, days_to_keep))
