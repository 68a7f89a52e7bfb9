"""
Keystone Backend — Background Job Tests
=======================================

What:  The queue facade, the task coroutines and the Celery wiring, all
       without a broker.

What we test:
    ✅ JobQueue publishes to the right task and queue
    ✅ Broker failures are reported as False, not raised
    ✅ Task coroutines drive the e-mail and storage services
    ✅ Routing and the audit retention schedule
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kombu.exceptions import OperationalError as KombuOperationalError

from app.exceptions import BadGatewayError
from app.jobs import tasks
from app.jobs.celery_app import EMAIL_QUEUE, UPLOAD_QUEUE, celery_app, create_celery_app
from app.jobs.queue import JobQueue
from app.services.email_service import EmailService
from app.services.storage_service import StorageService
from conftest import build_settings


class TestJobQueue:
    def setup_method(self):
        self.queue = JobQueue()

    @pytest.mark.asyncio
    async def test_enqueue_welcome_email(self):
        with patch.object(tasks.send_welcome_email, "apply_async", return_value=MagicMock(id="job-1")) as apply:
            assert await self.queue.enqueue_welcome_email("a@example.com", "Ada") is True
        apply.assert_called_once_with(kwargs={"to": "a@example.com", "name": "Ada"}, queue=EMAIL_QUEUE)

    @pytest.mark.asyncio
    async def test_enqueue_upload_processing(self):
        with patch.object(tasks.process_upload, "apply_async") as apply:
            await self.queue.enqueue_upload_processing("uploads/u/x.png", 42)
        apply.assert_called_once_with(kwargs={"key": "uploads/u/x.png", "user_id": "42"}, queue=UPLOAD_QUEUE)

    @pytest.mark.asyncio
    async def test_broker_failure_returns_false(self):
        with patch.object(tasks.send_welcome_email, "apply_async", side_effect=KombuOperationalError("no broker")):
            assert await self.queue.enqueue_welcome_email("a@example.com") is False


class TestTaskCoroutines:
    @pytest.mark.asyncio
    async def test_deliver_email_uses_given_service(self):
        service = AsyncMock(spec=EmailService)
        await tasks.deliver_email(build_settings(), "a@example.com", "Hi", "<p>x</p>", service=service)
        service.send_email.assert_awaited_once_with("a@example.com", "Hi", "<p>x</p>", None)
        service.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deliver_welcome_email_propagates_for_retry(self):
        service = AsyncMock(spec=EmailService)
        service.send_welcome_email.side_effect = BadGatewayError("E-mail provider unavailable")
        with pytest.raises(BadGatewayError):
            await tasks.deliver_welcome_email(build_settings(), "a@example.com", "Ada", service=service)

    @pytest.mark.asyncio
    async def test_inspect_upload_without_storage(self):
        result = await tasks.inspect_upload(build_settings(), "uploads/u/x.png", "u")
        assert result == {"key": "uploads/u/x.png", "exists": None}

    @pytest.mark.asyncio
    async def test_inspect_upload_checks_bucket(self):
        storage = AsyncMock(spec=StorageService)
        storage.object_exists.return_value = False
        storage.bucket = "keystone-uploads"

        result = await tasks.inspect_upload(build_settings(), "uploads/u/x.png", "u", storage=storage)

        assert result == {"key": "uploads/u/x.png", "exists": False}
        storage.object_exists.assert_awaited_once_with("uploads/u/x.png")


class TestCeleryConfig:
    def test_routes(self):
        routes = celery_app.conf.task_routes
        assert routes["app.jobs.tasks.send_email"] == {"queue": EMAIL_QUEUE}
        assert routes["app.jobs.tasks.process_upload"] == {"queue": UPLOAD_QUEUE}

    def test_retention_schedule(self):
        entry = celery_app.conf.beat_schedule["prune-audit-logs-daily"]
        assert entry["task"] == tasks.prune_audit_logs.name

    def test_email_tasks_retry_provider_errors(self):
        assert BadGatewayError in tasks.send_email.autoretry_for
        assert tasks.send_email.max_retries == 5

    def test_broker_from_settings(self):
        app = create_celery_app(build_settings(redis_url="redis://cache:6379/2"))
        assert app.conf.broker_url == "redis://cache:6379/2"
