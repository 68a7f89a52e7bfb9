"""
Keystone Backend — Filter Descriptors
=====================================

What:  A tagged union of the filter kinds the list endpoints support.
Why:   Filters reach the repository as typed values with a `kind` discriminant
       instead of an opaque dict, so each kind is validated once at the
       boundary and the repository handles every kind explicitly.

Kinds:
    text        full-text search term (its own query strategy, see ExampleRepository.search)
    date_range  inclusive range over a timestamp column
    tags        tag-set intersection
    eq          equality on a whitelisted column
"""

import uuid
from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Annotated


class TextSearchFilter(BaseModel):
    kind: Literal["text"] = "text"
    term: str = Field(min_length=1)


class DateRangeFilter(BaseModel):
    kind: Literal["date_range"] = "date_range"
    field: Literal["created_at", "updated_at", "published_at"] = "created_at"
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.start is None and self.end is None:
            raise ValueError("date_range needs at least one bound")
        if self.start and self.end and self.start > self.end:
            raise ValueError("date_range start must be before end")
        return self


class TagFilter(BaseModel):
    kind: Literal["tags"] = "tags"
    tags: List[str] = Field(min_length=1)


class EqualityFilter(BaseModel):
    kind: Literal["eq"] = "eq"
    field: Literal["status", "is_public", "user_id"]
    value: Union[bool, uuid.UUID, str]


ExampleFilter = Annotated[
    Union[TextSearchFilter, DateRangeFilter, TagFilter, EqualityFilter],
    Field(discriminator="kind"),
]
