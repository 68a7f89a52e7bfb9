"""
Keystone Backend — Example Request/Response Schemas
===================================================

What:  Pydantic contracts for /api/examples.
How:   Input models normalise as they validate (names trimmed, tags trimmed,
       lower-cased and de-duplicated, comma-separated query tags split) so the
       service only ever sees clean values.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, Field, StringConstraints, field_validator, model_validator
from typing_extensions import Annotated

from app.models.enums import ExampleStatus
from app.models.example import DESCRIPTION_MAX_LENGTH, MAX_TAGS, NAME_MAX_LENGTH
from app.schemas.common import CamelModel, DateRangeQuery, NonEmptyStr, PaginationQuery
from app.schemas.filters import (
    DateRangeFilter,
    EqualityFilter,
    ExampleFilter,
    TagFilter,
    TextSearchFilter,
)

ExampleName = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=NAME_MAX_LENGTH)
]
ExampleDescription = Annotated[
    str, StringConstraints(strip_whitespace=True, max_length=DESCRIPTION_MAX_LENGTH)
]
Tag = Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, min_length=1, max_length=50)]

# sortBy values accepted on the wire → model attribute
SORT_FIELDS = {
    "name": "name",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "viewCount": "view_count",
}


def _dedupe(tags: Optional[List[str]]) -> Optional[List[str]]:
    if tags is None:
        return None
    return list(dict.fromkeys(tags))


# ══════════════════════════════════════════════════════════════════════════
# Request bodies
# ══════════════════════════════════════════════════════════════════════════


class ExampleCreate(CamelModel):
    name: ExampleName
    description: Optional[ExampleDescription] = None
    status: ExampleStatus = ExampleStatus.DRAFT
    tags: List[Tag] = Field(default_factory=list, max_length=MAX_TAGS)
    is_public: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v):
        return _dedupe(v)


class ExampleUpdate(CamelModel):
    """Partial update; only fields present in the body are applied."""

    name: Optional[ExampleName] = None
    description: Optional[ExampleDescription] = None
    status: Optional[ExampleStatus] = None
    tags: Optional[List[Tag]] = Field(default=None, max_length=MAX_TAGS)
    is_public: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v):
        return _dedupe(v)

    @model_validator(mode="after")
    def reject_null_for_required_columns(self):
        # description may be cleared with null; the rest are NOT NULL columns
        for name in ("name", "status", "tags", "is_public", "metadata"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PublishRequest(CamelModel):
    make_public: bool = True


class BulkDeleteRequest(CamelModel):
    ids: List[uuid.UUID] = Field(min_length=1, max_length=100)


# ══════════════════════════════════════════════════════════════════════════
# Query parameters
# ══════════════════════════════════════════════════════════════════════════


class ExampleListQuery(PaginationQuery, DateRangeQuery):
    """
    GET /api/examples query string.

    `search` selects the ranked text-search strategy; without it the generic
    filter path is used. Either way every other filter applies.
    """

    status: Optional[ExampleStatus] = None
    is_public: Optional[bool] = None
    tags: Optional[List[Tag]] = Field(default=None, max_length=MAX_TAGS)
    search: Optional[NonEmptyStr] = None
    sort_by: Literal["name", "createdAt", "updatedAt", "viewCount"] = "createdAt"
    order: Literal["asc", "desc"] = "desc"
    user_id: Optional[uuid.UUID] = None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v):
        # ?tags=a,b and ?tags=a&tags=b are both accepted
        if isinstance(v, str):
            v = [v]
        if isinstance(v, list):
            parts = []
            for item in v:
                parts.extend(p for p in str(item).split(",") if p.strip())
            return parts or None
        return v

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v):
        return _dedupe(v)

    @property
    def sort_column(self) -> str:
        return SORT_FIELDS[self.sort_by]

    @property
    def text_search(self) -> Optional[TextSearchFilter]:
        if self.search:
            return TextSearchFilter(term=self.search)
        return None

    def filters(self) -> List[ExampleFilter]:
        """Descriptors for every filter except the free-text term."""
        result: List[ExampleFilter] = []
        if self.status is not None:
            result.append(EqualityFilter(field="status", value=self.status.value))
        if self.is_public is not None:
            result.append(EqualityFilter(field="is_public", value=self.is_public))
        if self.user_id is not None:
            result.append(EqualityFilter(field="user_id", value=self.user_id))
        if self.tags:
            result.append(TagFilter(tags=self.tags))
        if self.start_date or self.end_date:
            result.append(DateRangeFilter(start=self.start_date, end=self.end_date))
        return result


class PopularQuery(CamelModel):
    limit: int = Field(default=10, ge=1, le=100)


# ══════════════════════════════════════════════════════════════════════════
# Responses
# ══════════════════════════════════════════════════════════════════════════


class ExampleResponse(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    description: Optional[str] = None
    status: ExampleStatus
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    is_public: bool
    published_at: Optional[datetime] = None
    view_count: int = 0
    created_at: datetime
    updated_at: datetime


class AdminExampleResponse(ExampleResponse):
    """Administrative view; the only representation that exposes deletedAt."""

    deleted_at: Optional[datetime] = None


class StatusCounts(CamelModel):
    draft: int = 0
    published: int = 0
    archived: int = 0


class PopularExample(CamelModel):
    id: uuid.UUID
    name: str
    views: int


class ExampleStats(CamelModel):
    total: int
    by_status: StatusCounts
    total_views: int
    most_popular: Optional[PopularExample] = None


class BulkDeleteResult(CamelModel):
    deleted: int
    failed: List[str] = Field(default_factory=list)
