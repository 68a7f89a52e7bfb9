"""
Keystone Backend — Upload Routes
================================

Browsers upload straight to the bucket with a presigned POST; the API signs
the request and is told when the upload finished.

    POST /api/uploads/presign    {filename, contentType, size} → {key, url, fields, expiresIn}
    POST /api/uploads/complete   {key} → {key, queued}

Both are behind the upload limiter (20 per hour per user).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from app.dependencies import get_current_user, get_job_queue, get_storage_service, require_permission
from app.exceptions import ForbiddenError
from app.jobs.queue import JobQueue
from app.middleware.rate_limit import upload_limiter
from app.models.user import User
from app.responses import created, success
from app.schemas.uploads import PresignedUpload, PresignRequest, UploadAccepted, UploadComplete
from app.services.storage_service import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/uploads",
    tags=["Uploads"],
    dependencies=[Depends(get_current_user), Depends(upload_limiter)],
)

can_upload = require_permission("uploads:create")


@router.post("/presign", status_code=201, summary="Sign a direct upload")
async def presign_upload(
    body: PresignRequest,
    user: User = Depends(can_upload),
    storage: StorageService = Depends(get_storage_service),
):
    presigned = await storage.create_presigned_upload(user.id, body.filename, body.content_type, body.size)
    return created(PresignedUpload.model_validate(presigned))


@router.post("/complete", summary="Report a finished upload")
async def complete_upload(
    body: UploadComplete,
    user: User = Depends(can_upload),
    storage: StorageService = Depends(get_storage_service),
    jobs: Optional[JobQueue] = Depends(get_job_queue),
):
    if not storage.owns_key(user.id, body.key):
        raise ForbiddenError("You can only complete your own uploads")

    queued = False
    if jobs is not None:
        queued = await jobs.enqueue_upload_processing(body.key, user.id)
    else:
        logger.info("Upload %s completed by %s (jobs disabled, not queued)", body.key, user.id)
    return success(UploadAccepted(key=body.key, queued=queued))
