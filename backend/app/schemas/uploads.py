"""Upload contracts: presign request/response and completion notice."""

from typing import Dict

from pydantic import Field

from app.schemas.common import CamelModel, NonEmptyStr


class PresignRequest(CamelModel):
    filename: NonEmptyStr = Field(max_length=255)
    content_type: NonEmptyStr
    size: int = Field(gt=0, description="Declared size in bytes")


class PresignedUpload(CamelModel):
    key: str
    url: str
    fields: Dict[str, str]
    expires_in: int


class UploadComplete(CamelModel):
    key: NonEmptyStr = Field(max_length=1024)


class UploadAccepted(CamelModel):
    key: str
    queued: bool
