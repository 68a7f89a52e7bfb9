"""
Keystone Backend — Example Repository
=====================================

What:  Every SQL statement that touches `examples`.
Why:   Soft-delete scoping is stated at the call site. Each read exists in an
       active-only form (the default) and an explicit including-deleted form,
       so forgetting a `deleted_at IS NULL` predicate isn't possible by omission.
How:   Async SQLAlchemy 2.0 `select()` / `update()` on the request session.
       Writes flush but never commit; the session dependency commits once per
       request together with the audit entry.

Query strategies:
    list()    generic filter path: equality / tag overlap / date range, sorted
              by one column, offset pagination.
    search()  full-text path: to_tsvector(name || ' ' || description) @@
              plainto_tsquery(term), ordered by ts_rank desc. Honours status,
              is_public and visibility only.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Select, and_, asc, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.sql.elements import ColumnElement

from app.models.enums import ExampleStatus
from app.models.example import SEARCH_CONFIG, Example, search_vector
from app.schemas.filters import (
    DateRangeFilter,
    EqualityFilter,
    ExampleFilter,
    TagFilter,
    TextSearchFilter,
)

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {"name", "created_at", "updated_at", "view_count", "published_at"}


@dataclass(frozen=True)
class Visibility:
    """
    Row visibility for a requester: public rows plus their own.

    `requester_id=None` is an anonymous caller and sees public rows only.
    """

    requester_id: Optional[uuid.UUID] = None

    def clause(self) -> ColumnElement[bool]:
        if self.requester_id is None:
            return Example.is_public.is_(True)
        return or_(Example.is_public.is_(True), Example.user_id == self.requester_id)


@dataclass(frozen=True)
class Sort:
    column: str = "created_at"
    order: str = "desc"

    def clauses(self) -> List[Any]:
        if self.column not in SORTABLE_COLUMNS:
            raise ValueError(f"Unsupported sort column: {self.column}")
        direction = asc if self.order == "asc" else desc
        # id breaks ties so offset pages are stable
        return [direction(getattr(Example, self.column)), direction(Example.id)]


def text_query(term: str):
    return func.plainto_tsquery(SEARCH_CONFIG, term)


def filter_clause(f: ExampleFilter) -> ColumnElement[bool]:
    """SQL predicate for one filter descriptor."""
    if isinstance(f, EqualityFilter):
        value = f.value
        if f.field == "status" and isinstance(value, ExampleStatus):
            value = value.value
        return getattr(Example, f.field) == value
    if isinstance(f, TagFilter):
        return Example.tags.overlap(f.tags)
    if isinstance(f, DateRangeFilter):
        column = getattr(Example, f.field)
        bounds = []
        if f.start is not None:
            bounds.append(column >= f.start)
        if f.end is not None:
            bounds.append(column <= f.end)
        return and_(*bounds)
    if isinstance(f, TextSearchFilter):
        return search_vector().op("@@")(text_query(f.term))
    raise TypeError(f"Unknown filter kind: {f!r}")


class ExampleRepository:
    """Persistence access for Example rows, bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Scoping ───────────────────────────────────────────────────────────

    @staticmethod
    def _active(stmt: Select) -> Select:
        return stmt.where(Example.deleted_at.is_(None))

    async def _page(self, clauses: Sequence[Any], order_by: Sequence[Any], limit: int, skip: int) -> Tuple[List[Example], int]:
        rows_stmt = select(Example).where(*clauses).order_by(*order_by).limit(limit).offset(skip)
        count_stmt = select(func.count()).select_from(Example).where(*clauses)

        rows = (await self.session.execute(rows_stmt)).scalars().all()
        total = (await self.session.execute(count_stmt)).scalar_one()
        return list(rows), total

    # ── Writes ────────────────────────────────────────────────────────────

    async def create(self, **fields: Any) -> Example:
        """
        Insert and flush. A per-owner name collision surfaces here as
        IntegrityError from the partial unique index.
        """
        if "metadata" in fields:
            fields["metadata_"] = fields.pop("metadata")
        example = Example(**fields)
        self.session.add(example)
        await self.session.flush()
        await self.session.refresh(example)
        return example

    async def save(self, example: Example) -> Example:
        await self.session.flush()
        await self.session.refresh(example)
        return example

    async def increment_view_count(self, example: Example) -> int:
        """
        Atomic `view_count = view_count + 1`; concurrent increments are never lost.

        The loaded instance is synced to the new value without being marked
        dirty, so a later flush can't write a stale count back.
        """
        stmt = (
            update(Example)
            .where(Example.id == example.id, Example.deleted_at.is_(None))
            # views don't count as edits
            .values(view_count=Example.view_count + 1, updated_at=Example.updated_at)
            .returning(Example.view_count)
            .execution_options(synchronize_session=False)
        )
        new_count = (await self.session.execute(stmt)).scalar_one_or_none()
        if new_count is None:
            return example.view_count
        set_committed_value(example, "view_count", new_count)
        return new_count

    async def soft_delete(self, example: Example) -> Example:
        example.soft_delete()
        await self.session.flush()
        return example

    async def restore(self, example: Example) -> Example:
        example.restore()
        return await self.save(example)

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, example_id: uuid.UUID) -> Optional[Example]:
        stmt = self._active(select(Example).where(Example.id == example_id))
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_including_deleted(self, example_id: uuid.UUID) -> Optional[Example]:
        stmt = select(Example).where(Example.id == example_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def name_exists(
        self,
        user_id: uuid.UUID,
        name: str,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        stmt = self._active(
            select(Example.id).where(Example.user_id == user_id, Example.name == name)
        )
        if exclude_id is not None:
            stmt = stmt.where(Example.id != exclude_id)
        return (await self.session.execute(stmt.limit(1))).first() is not None

    async def find_by_user(
        self,
        user_id: uuid.UUID,
        status: Optional[ExampleStatus] = None,
        limit: int = 20,
        skip: int = 0,
        sort: Sort = Sort(),
    ) -> List[Example]:
        stmt = self._active(select(Example).where(Example.user_id == user_id))
        if status is not None:
            stmt = stmt.where(Example.status == ExampleStatus(status).value)
        stmt = stmt.order_by(*sort.clauses()).limit(limit).offset(skip)
        return list((await self.session.execute(stmt)).scalars().all())

    async def search(
        self,
        term: str,
        filters: Sequence[ExampleFilter] = (),
        visibility: Optional[Visibility] = None,
        limit: int = 20,
        skip: int = 0,
    ) -> Tuple[List[Example], int]:
        """
        Ranked full-text search over name and description (active rows only).

        `filters` narrow the match the same way they narrow `list`.
        """
        query = text_query(term)
        vector = search_vector()
        clauses: List[Any] = [Example.deleted_at.is_(None), vector.op("@@")(query)]
        clauses.extend(filter_clause(f) for f in filters)
        if visibility is not None:
            clauses.append(visibility.clause())

        rank = func.ts_rank(vector, query)
        return await self._page(clauses, [desc(rank), desc(Example.created_at)], limit, skip)

    async def list(
        self,
        filters: Sequence[ExampleFilter] = (),
        visibility: Optional[Visibility] = None,
        sort: Sort = Sort(),
        limit: int = 20,
        skip: int = 0,
        include_deleted: bool = False,
    ) -> Tuple[List[Example], int]:
        clauses: List[Any] = [filter_clause(f) for f in filters]
        if not include_deleted:
            clauses.append(Example.deleted_at.is_(None))
        if visibility is not None:
            clauses.append(visibility.clause())
        return await self._page(clauses, sort.clauses(), limit, skip)

    async def get_popular(self, limit: int = 10) -> List[Example]:
        stmt = self._active(
            select(Example).where(
                Example.status == ExampleStatus.PUBLISHED.value,
                Example.is_public.is_(True),
            )
        ).order_by(desc(Example.view_count), Example.published_at.desc().nulls_last()).limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())

    # ── Aggregates ────────────────────────────────────────────────────────

    async def stats_for_user(self, user_id: uuid.UUID) -> Dict[str, Any]:
        """Counts by status plus summed views over the user's active rows."""
        stmt = self._active(
            select(
                Example.status,
                func.count(Example.id),
                func.coalesce(func.sum(Example.view_count), 0),
            ).where(Example.user_id == user_id)
        ).group_by(Example.status)

        by_status = {s.value: 0 for s in ExampleStatus}
        total = 0
        total_views = 0
        for status, count, views in (await self.session.execute(stmt)).all():
            by_status[status] = count
            total += count
            total_views += int(views)
        return {"total": total, "by_status": by_status, "total_views": total_views}

    async def most_viewed_for_user(self, user_id: uuid.UUID) -> Optional[Example]:
        stmt = (
            self._active(select(Example).where(Example.user_id == user_id))
            .order_by(desc(Example.view_count), desc(Example.created_at))
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()
