"""User account contracts: identity-provider profile in, account view out."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import AliasChoices, Field, field_validator

from app.models.enums import SubscriptionStatus, UserRole
from app.schemas.common import CamelModel, Email


class IdentityProfile(CamelModel):
    """The subset of an identity-provider user we mirror locally."""

    external_id: str = Field(min_length=1)
    email: Email
    name: Optional[str] = None
    email_verified: Optional[bool] = None
    profile_image: Optional[str] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("name")
    @classmethod
    def blank_name_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class UserResponse(CamelModel):
    id: uuid.UUID
    email: str
    name: Optional[str] = None
    role: UserRole
    subscription: SubscriptionStatus
    email_verified: bool = False
    profile_image: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))
    last_login_at: Optional[datetime] = None
    created_at: datetime


class UserStats(CamelModel):
    total: int
    active: int
    active_last_30_days: int
    deleted: int
    by_role: Dict[str, int]
    by_subscription: Dict[str, int]
