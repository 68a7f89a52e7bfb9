"""
Keystone Backend — Job Queue Facade
===================================

What:  The API-side handle for enqueueing background work.
Why:   Routes and services depend on this small surface rather than on Celery,
       so tests can swap it for a mock and the app runs without a broker when
       the jobs feature is off.
How:   Publishing to the broker is a blocking kombu call, so it runs in a
       worker thread. Publish failures are logged and reported as False; the
       request that triggered the job has already succeeded.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from kombu.exceptions import KombuError

from app.jobs import tasks
from app.jobs.celery_app import EMAIL_QUEUE, UPLOAD_QUEUE

logger = logging.getLogger(__name__)


class JobQueue:
    async def _enqueue(self, task: Any, queue: str, kwargs: Dict[str, Any]) -> bool:
        try:
            result = await asyncio.to_thread(task.apply_async, kwargs=kwargs, queue=queue)
        except (KombuError, OSError) as e:
            logger.error("Failed to enqueue %s on %s: %s", task.name, queue, e)
            return False
        logger.info("Enqueued %s on %s (id=%s)", task.name, queue, getattr(result, "id", None))
        return True

    async def enqueue_welcome_email(self, email: str, name: Optional[str] = None) -> bool:
        return await self._enqueue(tasks.send_welcome_email, EMAIL_QUEUE, {"to": email, "name": name})

    async def enqueue_upload_processing(self, key: str, user_id: Any) -> bool:
        return await self._enqueue(
            tasks.process_upload,
            UPLOAD_QUEUE,
            {"key": key, "user_id": str(user_id)},
        )
