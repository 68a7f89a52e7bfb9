"""
Keystone Backend — Example SQLAlchemy Model
===========================================

What:  ORM model for the `examples` table, the primary user-owned resource.
How:   PostgreSQL-specific types: ARRAY for tags (GIN index, `&&` overlap for
       tag filters), JSONB for free-form metadata, and an expression GIN index
       over to_tsvector(name || ' ' || description) for ranked text search.

Invariants enforced by the schema:
    - name unique per owner among non-deleted rows (partial unique index)
    - view_count >= 0 (CHECK)
    - status = 'published' implies published_at IS NOT NULL (CHECK, and the
      ORM hook at the bottom of this module fills it in before flush)

Soft delete:
    deleted_at IS NULL means active. The model never filters on its own; every
    query states its scope through ExampleRepository (active_only vs
    including_deleted).
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    String,
    event,
    func,
    literal_column,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, utcnow
from app.models.enums import ExampleStatus

NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
MAX_TAGS = 10

# Constant text-search configuration; rendered inline so queries match the index expression
SEARCH_CONFIG = literal_column("'english'")


class Example(TimestampMixin, Base):
    """A user-owned content item with a draft → published → archived lifecycle."""

    __tablename__ = "examples"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    # Owner reference; deleting a user does not cascade to their examples
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        comment="Owning user (users.id), not cascaded",
    )

    name: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(DESCRIPTION_MAX_LENGTH), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ExampleStatus.DRAFT.value,
        server_default=text("'draft'"),
    )

    tags: Mapped[List[str]] = mapped_column(
        ARRAY(String(50)),
        nullable=False,
        default=list,
        server_default=text("'{}'"),
    )

    # "metadata" is reserved on declarative classes, so the attribute carries a suffix
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    is_public: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    view_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        default=None,
        comment="Soft-delete marker; NULL means active",
    )

    __table_args__ = (
        CheckConstraint("view_count >= 0", name="ck_examples_view_count_non_negative"),
        CheckConstraint(
            "status IN ('draft', 'published', 'archived')",
            name="ck_examples_status",
        ),
        CheckConstraint(
            "status <> 'published' OR published_at IS NOT NULL",
            name="ck_examples_published_at",
        ),
        Index(
            "uq_examples_user_name_active",
            "user_id",
            "name",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("idx_examples_user_status", "user_id", "status"),
        Index("idx_examples_tags", "tags", postgresql_using="gin"),
        Index(
            "idx_examples_deleted_at",
            "deleted_at",
            postgresql_where=text("deleted_at IS NOT NULL"),
        ),
    )

    # ── Instance helpers ──────────────────────────────────────────────────

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def can_edit(self, user_id: Union[uuid.UUID, str, None]) -> bool:
        """Ownership equality check."""
        if user_id is None:
            return False
        return str(self.user_id) == str(user_id)

    def publish(self, make_public: bool = True) -> None:
        self.status = ExampleStatus.PUBLISHED.value
        self.is_public = make_public
        self.published_at = utcnow()

    def archive(self) -> None:
        self.status = ExampleStatus.ARCHIVED.value
        self.is_public = False

    def soft_delete(self) -> None:
        self.deleted_at = utcnow()

    def restore(self) -> None:
        self.deleted_at = None

    def __repr__(self) -> str:
        return f"<Example(id={self.id}, name='{self.name}', status='{self.status}')>"


def search_vector():
    """to_tsvector over name + description; the same expression backs idx_examples_search."""
    return func.to_tsvector(
        SEARCH_CONFIG,
        Example.name
        + literal_column("' '", String)
        + func.coalesce(Example.description, literal_column("''", String)),
    )


Index("idx_examples_search", search_vector(), postgresql_using="gin")
Index("idx_examples_created_at", Example.created_at.desc())
Index("idx_examples_published_at", Example.published_at.desc())


@event.listens_for(Example, "before_insert")
@event.listens_for(Example, "before_update")
def _ensure_published_at(mapper, connection, target: Example) -> None:
    if target.status == ExampleStatus.PUBLISHED.value and target.published_at is None:
        target.published_at = utcnow()
