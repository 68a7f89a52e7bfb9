"""
Keystone Backend — Storage & Upload Tests
=========================================

What we test:
    ✅ Filename sanitising and object key layout
    ✅ Presign validation (content type, size) and the signed policy
    ✅ boto3 failures → 502; missing objects → False
    ✅ /api/uploads routes: ownership check, job enqueue, 503 when not configured
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from app.dependencies import get_current_user, get_job_queue, get_storage_service
from app.exceptions import BadGatewayError, ValidationError
from app.jobs.queue import JobQueue
from app.services.storage_service import StorageService, build_object_key, safe_filename
from conftest import build_settings


def s3_settings(**overrides):
    return build_settings(
        aws_access_key_id="AKIATEST",
        aws_secret_access_key="secret",
        s3_bucket="keystone-uploads",
        **overrides,
    )


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "HeadObject")


class TestKeys:
    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("report.pdf", "report.pdf"),
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\My Photo (1).png", "My-Photo-1-.png"),
            ("...", "file"),
            ("ünïcode name.txt", "n-code-name.txt"),
        ],
    )
    def test_safe_filename(self, filename, expected):
        assert safe_filename(filename) == expected

    def test_object_key_layout(self):
        user_id = uuid.uuid4()
        key = build_object_key(user_id, "a b.png", now=datetime(2024, 3, 9, tzinfo=timezone.utc))
        prefix = f"uploads/{user_id}/2024/03/"
        assert key.startswith(prefix)
        assert key.endswith("-a-b.png")


class TestStorageService:
    def setup_method(self):
        self.client = MagicMock()
        self.client.generate_presigned_post.return_value = {
            "url": "https://keystone-uploads.s3.amazonaws.com/",
            "fields": {"key": "k", "policy": "p"},
        }
        self.service = StorageService(s3_settings(), client=self.client)
        self.user_id = uuid.uuid4()

    @pytest.mark.asyncio
    async def test_presign(self):
        result = await self.service.create_presigned_upload(self.user_id, "photo.png", "image/png", 2048)

        assert result["key"].startswith(f"uploads/{self.user_id}/")
        assert result["url"] == "https://keystone-uploads.s3.amazonaws.com/"
        assert result["expiresIn"] == 900
        kwargs = self.client.generate_presigned_post.call_args.kwargs
        assert kwargs["Bucket"] == "keystone-uploads"
        assert {"Content-Type": "image/png"} in kwargs["Conditions"]
        assert ["content-length-range", 1, 10 * 1024 * 1024] in kwargs["Conditions"]

    @pytest.mark.asyncio
    async def test_disallowed_content_type(self):
        with pytest.raises(ValidationError) as exc:
            await self.service.create_presigned_upload(self.user_id, "x.exe", "application/x-msdownload", 10)
        assert exc.value.details[0]["field"] == "contentType"
        self.client.generate_presigned_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_oversized(self):
        with pytest.raises(ValidationError):
            await self.service.create_presigned_upload(self.user_id, "x.png", "image/png", 10 * 1024 * 1024 + 1)

    @pytest.mark.asyncio
    async def test_presign_provider_failure(self):
        self.client.generate_presigned_post.side_effect = EndpointConnectionError(endpoint_url="https://s3")
        with pytest.raises(BadGatewayError):
            await self.service.create_presigned_upload(self.user_id, "x.png", "image/png", 10)

    @pytest.mark.asyncio
    async def test_object_exists(self):
        assert await self.service.object_exists("k") is True
        self.client.head_object.side_effect = client_error("404")
        assert await self.service.object_exists("k") is False
        self.client.head_object.side_effect = client_error("AccessDenied")
        with pytest.raises(BadGatewayError):
            await self.service.object_exists("k")

    @pytest.mark.asyncio
    async def test_head_bucket(self):
        assert await self.service.head_bucket() is True
        self.client.head_bucket.side_effect = client_error("403")
        assert await self.service.head_bucket() is False

    def test_owns_key(self):
        assert self.service.owns_key(self.user_id, f"uploads/{self.user_id}/2024/01/x.png")
        assert not self.service.owns_key(self.user_id, f"uploads/{uuid.uuid4()}/2024/01/x.png")


class TestUploadRoutes:
    @pytest.fixture(autouse=True)
    def signed_in(self, app, user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    @pytest.fixture
    def storage(self, app):
        service = StorageService(s3_settings(), client=MagicMock())
        app.dependency_overrides[get_storage_service] = lambda: service
        return service

    @pytest.mark.asyncio
    async def test_not_configured(self, test_client):
        response = await test_client.post(
            "/api/uploads/presign",
            json={"filename": "a.png", "contentType": "image/png", "size": 10},
        )
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_presign_route(self, app, test_client, storage, signed_in):
        storage._client.generate_presigned_post.return_value = {"url": "https://s3/", "fields": {"key": "k"}}

        response = await test_client.post(
            "/api/uploads/presign",
            json={"filename": "a.png", "contentType": "image/png", "size": 10},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["key"].startswith(f"uploads/{signed_in.id}/")
        assert data["expiresIn"] == 900
        assert response.headers["X-RateLimit-Limit"] == "20"

    @pytest.mark.asyncio
    async def test_complete_foreign_key_forbidden(self, test_client, storage):
        response = await test_client.post("/api/uploads/complete", json={"key": f"uploads/{uuid.uuid4()}/x.png"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_complete_enqueues(self, app, test_client, storage, signed_in):
        jobs = AsyncMock(spec=JobQueue)
        jobs.enqueue_upload_processing.return_value = True
        app.dependency_overrides[get_job_queue] = lambda: jobs
        key = f"uploads/{signed_in.id}/2024/01/x.png"

        response = await test_client.post("/api/uploads/complete", json={"key": key})

        assert response.status_code == 200
        assert response.json()["data"] == {"key": key, "queued": True}
        jobs.enqueue_upload_processing.assert_awaited_once_with(key, signed_in.id)

    @pytest.mark.asyncio
    async def test_complete_without_jobs(self, test_client, storage, signed_in):
        key = f"uploads/{signed_in.id}/2024/01/x.png"
        response = await test_client.post("/api/uploads/complete", json={"key": key})
        assert response.json()["data"]["queued"] is False
