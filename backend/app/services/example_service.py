"""
Keystone Backend — Example Service (Business Rules)
===================================================

What:  Ownership, per-owner name uniqueness, lifecycle transitions and audit
       entries for the Example resource.
Why:   Routes stay thin and the repository stays rule-free; this is the only
       layer that decides whether an operation is allowed.
How:   Bound to one request's repository + audit service. Every mutation
       flushes, then writes its audit entry in the same session; both commit
       together when the request finishes.

Operation flow (update):
    load active row ──▶ ownership ──▶ name collision ──▶ status transition
        ──▶ diff + apply ──▶ flush ──▶ audit("update", changes={before, after})

Errors:
    NotFoundError   missing or soft-deleted (indistinguishable to callers)
    ForbiddenError  private row / not the owner
    ConflictError   duplicate name, archived → published, invalid transition
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.exc import IntegrityError

from app.database import is_unique_violation
from app.exceptions import AppError, ConflictError, ForbiddenError, NotFoundError
from app.models.enums import AuditAction, ExampleStatus
from app.models.example import Example
from app.repositories.example_repository import ExampleRepository, Sort, Visibility
from app.schemas.example import (
    BulkDeleteResult,
    ExampleCreate,
    ExampleListQuery,
    ExampleStats,
    ExampleUpdate,
    PopularExample,
    StatusCounts,
)
from app.services.audit_service import AuditContext, AuditService

logger = logging.getLogger(__name__)

RESOURCE = "example"

DUPLICATE_NAME = "An example with this name already exists"
NOT_FOUND = "Example not found"

# API field → model attribute where they differ
_ATTRIBUTES = {"metadata": "metadata_"}


class Notifier(Protocol):
    async def emit_to_user(self, user_id: Any, event: str, data: Dict[str, Any]) -> None: ...


@dataclass
class ExamplePage:
    data: List[Example]
    total: int
    page: int
    limit: int


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class ExampleService:
    def __init__(
        self,
        repository: ExampleRepository,
        audit: AuditService,
        notifier: Optional[Notifier] = None,
    ):
        self.repository = repository
        self.audit = audit
        self.notifier = notifier

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _load(self, example_id: uuid.UUID) -> Example:
        example = await self.repository.get(example_id)
        if example is None:
            raise NotFoundError(NOT_FOUND, resource=RESOURCE, resource_id=str(example_id))
        return example

    async def _load_owned(self, example_id: uuid.UUID, user_id: uuid.UUID, denied: str) -> Example:
        example = await self._load(example_id)
        if not example.can_edit(user_id):
            raise ForbiddenError(denied, context={"example_id": str(example_id), "user_id": str(user_id)})
        return example

    async def _flush(self, write):
        """Run a write, turning a per-owner name collision into Conflict."""
        try:
            return await write
        except IntegrityError as e:
            if is_unique_violation(e):
                raise ConflictError(DUPLICATE_NAME)
            raise

    # ── Commands ──────────────────────────────────────────────────────────

    async def create(self, user_id: uuid.UUID, data: ExampleCreate, ctx: Optional[AuditContext] = None) -> Example:
        # Advisory check; the partial unique index is the real guard
        if await self.repository.name_exists(user_id, data.name):
            raise ConflictError(DUPLICATE_NAME)

        fields = data.model_dump()
        fields["status"] = data.status.value
        example = await self._flush(self.repository.create(user_id=user_id, **fields))

        await self.audit.log(
            AuditAction.CREATE,
            RESOURCE,
            example.id,
            ctx,
            user_id=user_id,
            metadata={"name": example.name},
        )
        logger.info("Example created: %s by user %s", example.id, user_id)
        return example

    async def update(
        self,
        example_id: uuid.UUID,
        user_id: uuid.UUID,
        data: ExampleUpdate,
        ctx: Optional[AuditContext] = None,
    ) -> Example:
        example = await self._load_owned(example_id, user_id, "You can only edit your own examples")
        incoming = data.changes()

        new_name = incoming.get("name")
        if new_name is not None and new_name != example.name:
            if await self.repository.name_exists(user_id, new_name, exclude_id=example.id):
                raise ConflictError(DUPLICATE_NAME)

        if incoming.get("status") is not None:
            current = ExampleStatus(example.status)
            target = ExampleStatus(incoming["status"])
            if not current.can_transition_to(target):
                raise ConflictError(f"Cannot change status from {current.value} to {target.value}")

        before: Dict[str, Any] = {}
        after: Dict[str, Any] = {}
        for field, value in incoming.items():
            attr = _ATTRIBUTES.get(field, field)
            value = _plain(value)
            current_value = getattr(example, attr)
            if current_value != value:
                before[field] = _plain(current_value)
                after[field] = value
                setattr(example, attr, value)

        if after.get("status") == ExampleStatus.ARCHIVED.value:
            example.archive()

        example = await self._flush(self.repository.save(example))

        await self.audit.log(
            AuditAction.UPDATE,
            RESOURCE,
            example.id,
            ctx,
            user_id=user_id,
            changes={"before": before, "after": after},
        )
        logger.info("Example updated: %s fields=%s", example.id, sorted(after))
        return example

    async def delete(self, example_id: uuid.UUID, user_id: uuid.UUID, ctx: Optional[AuditContext] = None) -> None:
        example = await self._load_owned(example_id, user_id, "You can only delete your own examples")
        await self.repository.soft_delete(example)
        await self.audit.log(AuditAction.DELETE, RESOURCE, example.id, ctx, user_id=user_id)
        logger.info("Example deleted: %s by user %s", example.id, user_id)

    async def publish(
        self,
        example_id: uuid.UUID,
        user_id: uuid.UUID,
        make_public: bool = True,
        ctx: Optional[AuditContext] = None,
    ) -> Example:
        example = await self._load_owned(example_id, user_id, "You can only publish your own examples")
        if example.status == ExampleStatus.ARCHIVED.value:
            raise ConflictError("Archived examples cannot be published")

        example.publish(make_public=make_public)
        example = await self.repository.save(example)

        await self.audit.log(
            AuditAction.PUBLISH,
            RESOURCE,
            example.id,
            ctx,
            user_id=user_id,
            metadata={"makePublic": make_public},
        )
        if self.notifier is not None:
            await self.notifier.emit_to_user(
                example.user_id,
                "example:published",
                {"id": str(example.id), "name": example.name, "isPublic": example.is_public},
            )
        logger.info("Example published: %s (public=%s)", example.id, make_public)
        return example

    async def archive(self, example_id: uuid.UUID, user_id: uuid.UUID, ctx: Optional[AuditContext] = None) -> Example:
        example = await self._load_owned(example_id, user_id, "You can only archive your own examples")
        example.archive()
        example = await self.repository.save(example)
        await self.audit.log(AuditAction.ARCHIVE, RESOURCE, example.id, ctx, user_id=user_id)
        logger.info("Example archived: %s", example.id)
        return example

    async def restore(self, example_id: uuid.UUID, ctx: Optional[AuditContext] = None) -> Example:
        """Administrative undo of a soft delete."""
        example = await self.repository.get_including_deleted(example_id)
        if example is None:
            raise NotFoundError(NOT_FOUND, resource=RESOURCE, resource_id=str(example_id))
        if not example.is_deleted:
            return example
        if await self.repository.name_exists(example.user_id, example.name, exclude_id=example.id):
            raise ConflictError(DUPLICATE_NAME)

        example = await self._flush(self.repository.restore(example))
        await self.audit.log(AuditAction.RESTORE, RESOURCE, example.id, ctx)
        logger.info("Example restored: %s", example.id)
        return example

    async def bulk_delete(
        self,
        ids: Sequence[uuid.UUID],
        user_id: uuid.UUID,
        ctx: Optional[AuditContext] = None,
    ) -> BulkDeleteResult:
        """Each id is deleted independently; failures are reported, not raised."""
        deleted = 0
        failed: List[str] = []
        for example_id in ids:
            try:
                await self.delete(example_id, user_id, ctx)
                deleted += 1
            except AppError as e:
                logger.warning("Bulk delete skipped %s: %s", example_id, e.message)
                failed.append(str(example_id))
        return BulkDeleteResult(deleted=deleted, failed=failed)

    # ── Queries ───────────────────────────────────────────────────────────

    async def get_by_id(
        self,
        example_id: uuid.UUID,
        requester_id: Optional[uuid.UUID] = None,
        increment_view: bool = False,
    ) -> Example:
        example = await self._load(example_id)
        is_owner = example.can_edit(requester_id)
        if not example.is_public and not is_owner:
            raise ForbiddenError("You do not have access to this example")
        # the owner's own views never count
        if increment_view and not is_owner:
            await self.repository.increment_view_count(example)
        return example

    async def list(self, query: ExampleListQuery, requester_id: Optional[uuid.UUID] = None) -> ExamplePage:
        """
        Public rows plus the requester's own. A free-text search is ranked by
        relevance; the remaining filters narrow either strategy alike.
        """
        visibility = Visibility(requester_id)
        if query.search:
            rows, total = await self.repository.search(
                query.search,
                query.filters(),
                visibility=visibility,
                limit=query.limit,
                skip=query.offset,
            )
        else:
            rows, total = await self.repository.list(
                query.filters(),
                visibility=visibility,
                sort=Sort(query.sort_column, query.order),
                limit=query.limit,
                skip=query.offset,
            )
        return ExamplePage(data=rows, total=total, page=query.page, limit=query.limit)

    async def list_all(self, query: ExampleListQuery) -> ExamplePage:
        """Administrative listing: every owner, soft-deleted rows included."""
        filters = list(query.filters())
        if query.text_search is not None:
            filters.append(query.text_search)
        rows, total = await self.repository.list(
            filters,
            visibility=None,
            sort=Sort(query.sort_column, query.order),
            limit=query.limit,
            skip=query.offset,
            include_deleted=True,
        )
        return ExamplePage(data=rows, total=total, page=query.page, limit=query.limit)

    async def get_user_stats(self, user_id: uuid.UUID) -> ExampleStats:
        stats = await self.repository.stats_for_user(user_id)
        top = await self.repository.most_viewed_for_user(user_id)
        return ExampleStats(
            total=stats["total"],
            by_status=StatusCounts(**stats["by_status"]),
            total_views=stats["total_views"],
            most_popular=PopularExample(id=top.id, name=top.name, views=top.view_count) if top else None,
        )

    async def get_popular(self, limit: int = 10) -> List[Example]:
        return await self.repository.get_popular(limit)
