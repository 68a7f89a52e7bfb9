"""
Keystone Backend — Object Storage (S3)
======================================

What:  Presigned direct-to-bucket uploads and object housekeeping.
Why:   Browsers upload straight to S3; the API only signs the request, so large
       files never pass through the app server.
How:   boto3 S3 client; its calls are blocking, so each runs in a worker thread.

Upload validation (before signing):
    - content type must be in ALLOWED_CONTENT_TYPES
    - declared size must be 1..upload_max_bytes, and the signed policy pins
      the same content-length range so S3 enforces it too

Object key layout:
    uploads/{user_id}/{yyyy}/{mm}/{uuid}-{safe filename}
"""

import asyncio
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.config import Settings
from app.exceptions import BadGatewayError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "text/csv",
}

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    """Basename with anything outside [A-Za-z0-9._-] collapsed to '-'."""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE.sub("-", base).strip(".-")
    return cleaned[:100] or "file"


def build_object_key(user_id: Any, filename: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"uploads/{user_id}/{now:%Y}/{now:%m}/{uuid.uuid4()}-{safe_filename(filename)}"


class StorageService:
    def __init__(self, settings: Settings, client: Any = None):
        self._bucket = settings.s3_bucket
        self._max_bytes = settings.upload_max_bytes
        self._expiry = settings.upload_url_expiry
        self._client = client or boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def owns_key(self, user_id: Any, key: str) -> bool:
        return key.startswith(f"uploads/{user_id}/")

    async def create_presigned_upload(
        self,
        user_id: Any,
        filename: str,
        content_type: str,
        size: int,
    ) -> Dict[str, Any]:
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(f"Content type {content_type} is not allowed", field="contentType")
        if size <= 0 or size > self._max_bytes:
            raise ValidationError(
                f"File size must be between 1 and {self._max_bytes} bytes",
                field="size",
            )

        key = build_object_key(user_id, filename)
        try:
            presigned = await asyncio.to_thread(
                self._client.generate_presigned_post,
                Bucket=self._bucket,
                Key=key,
                Fields={"Content-Type": content_type},
                Conditions=[
                    {"Content-Type": content_type},
                    ["content-length-range", 1, self._max_bytes],
                ],
                ExpiresIn=self._expiry,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Presign failed for %s: %s", key, e)
            raise BadGatewayError("Storage provider error")

        logger.info("Presigned upload for user %s: %s (%d bytes)", user_id, key, size)
        return {
            "key": key,
            "url": presigned["url"],
            "fields": presigned["fields"],
            "expiresIn": self._expiry,
        }

    async def object_exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            logger.error("head_object failed for %s: %s", key, e)
            raise BadGatewayError("Storage provider error")
        except BotoCoreError as e:
            logger.error("head_object failed for %s: %s", key, e)
            raise BadGatewayError("Storage provider error")

    async def delete_object(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error("Delete failed for %s: %s", key, e)
            raise BadGatewayError("Storage provider error")
        logger.info("Deleted %s/%s", self._bucket, key)

    async def head_bucket(self) -> bool:
        """Reachability probe for /health."""
        try:
            await asyncio.to_thread(self._client.head_bucket, Bucket=self._bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("S3 health check failed: %s", e)
            return False
