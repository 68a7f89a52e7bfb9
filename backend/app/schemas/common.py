"""
Keystone Backend — Shared Schemas & Reusable Field Validators
=============================================================

What:  Response envelopes, error body, and building blocks that feature schemas
       compose instead of redeclaring: identifier, e-mail, URL, E.164 phone,
       pagination / sort / date-range / search query shapes.
Why:   One envelope shape for every endpoint:
           success → {"success": true,  "data": ..., "meta": ...?}
           failure → {"success": false, "error": {"code", "message", "details"?, "requestId"?}}
       JSON keys are camelCase; Python attributes stay snake_case.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, EmailStr, Field, HttpUrl, StringConstraints, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

T = TypeVar("T")

PHONE_E164_PATTERN = r"^\+[1-9]\d{1,14}$"

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, serializes as camelCase."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


# ══════════════════════════════════════════════════════════════════════════
# Reusable field types
# ══════════════════════════════════════════════════════════════════════════

Identifier = uuid.UUID
Email = EmailStr
Url = HttpUrl
PhoneE164 = Annotated[str, StringConstraints(strip_whitespace=True, pattern=PHONE_E164_PATTERN)]
NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# ══════════════════════════════════════════════════════════════════════════
# Reusable query shapes
# ══════════════════════════════════════════════════════════════════════════


class PaginationQuery(CamelModel):
    page: int = Field(default=DEFAULT_PAGE, ge=1, description="1-based page number")
    limit: int = Field(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Items per page (max 100)")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class SortQuery(CamelModel):
    sort_by: Optional[str] = Field(default=None)
    order: Literal["asc", "desc"] = Field(default="desc")


class DateRangeQuery(CamelModel):
    start_date: Optional[datetime] = Field(default=None)
    end_date: Optional[datetime] = Field(default=None)

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must be before endDate")
        return self


class SearchQuery(CamelModel):
    q: Optional[NonEmptyStr] = Field(default=None)
    search: Optional[NonEmptyStr] = Field(default=None)

    @property
    def term(self) -> Optional[str]:
        return self.q or self.search


# ══════════════════════════════════════════════════════════════════════════
# Envelopes
# ══════════════════════════════════════════════════════════════════════════


class PageMeta(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


class ApiResponse(CamelModel, Generic[T]):
    """Success envelope (documentation model; responses are built by app.responses)."""

    success: bool = True
    data: T
    meta: Optional[Dict[str, Any]] = None


class MessageData(CamelModel):
    message: str


class ErrorDetail(CamelModel):
    field: str
    message: str
    code: Optional[str] = None
    location: Optional[str] = None


class ErrorBody(CamelModel):
    code: str = Field(description="Stable machine-readable error code")
    message: str = Field(description="Human-readable description")
    details: Optional[Any] = Field(default=None, description="Field violations or extra context")
    request_id: Optional[str] = Field(default=None, description="Correlation id for support")
    stack: Optional[List[str]] = Field(default=None, description="Traceback (development only)")


class ErrorResponse(CamelModel):
    success: bool = False
    error: ErrorBody
