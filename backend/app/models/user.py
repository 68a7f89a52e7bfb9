"""
Keystone Backend — User SQLAlchemy Model
========================================

What:  Local account mirrored from the external identity provider.
When:  Created on first authenticated request or by the identity webhook,
       updated on login and profile change events, soft-deleted when the
       provider deletes the identity.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, CheckConstraint, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, utcnow
from app.models.enums import SubscriptionStatus, UserRole


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    external_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Identity provider subject (token `sub` claim)",
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=UserRole.USER.value,
        server_default=text("'user'"),
    )
    subscription: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.FREE.value,
        server_default=text("'free'"),
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    email_verified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    profile_image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'moderator', 'user')", name="ck_users_role"),
        CheckConstraint(
            "subscription IN ('free', 'pro', 'enterprise', 'cancelled')",
            name="ck_users_subscription",
        ),
        Index(
            "uq_users_external_id_active",
            "external_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index(
            "uq_users_email_active",
            "email",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("idx_users_role_subscription", "role", "subscription"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_pro(self) -> bool:
        return self.subscription in (SubscriptionStatus.PRO.value, SubscriptionStatus.ENTERPRISE.value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def touch_login(self) -> None:
        self.last_login_at = utcnow()

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
