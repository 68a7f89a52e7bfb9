"""
Keystone Backend — Example Route Handlers
=========================================

What:  HTTP surface of the Example resource, mounted at /api/examples.
How:   Handlers validate input (FastAPI + pydantic), resolve the caller, build
       an AuditContext and delegate to ExampleService. Every response uses the
       success envelope from app.responses; failures are raised and rendered by
       the global handlers.

Routes (static paths are registered before /{example_id}):
    GET    /                      optional auth   list
    GET    /popular               public          most viewed public examples
    GET    /mine                  auth            the caller's examples
    GET    /stats                 auth            the caller's stats
    GET    /admin/all             admin           everything, deleted included
    POST   /admin/{id}/restore    admin           undo a soft delete
    POST   /bulk-delete           auth            per-id delete, partial failure
    GET    /{id}                  optional auth   ?view=true counts a view
    POST   /                      auth + strict   create (201)
    PUT    /{id}                  auth            partial update
    DELETE /{id}                  auth            soft delete
    POST   /{id}/publish          auth            body {makePublic: true}
    POST   /{id}/archive          auth
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from app.dependencies import get_current_user, get_example_service, get_optional_user, require_role
from app.middleware.rate_limit import strict_limiter, subscription_limiter
from app.models.enums import UserRole
from app.models.example import Example
from app.models.user import User
from app.responses import created, message, paginated, success
from app.schemas.common import ErrorResponse
from app.schemas.example import (
    AdminExampleResponse,
    BulkDeleteRequest,
    ExampleCreate,
    ExampleListQuery,
    ExampleResponse,
    ExampleUpdate,
    PopularQuery,
    PublishRequest,
)
from app.services.audit_service import AuditContext
from app.services.example_service import ExampleService
from app.validation import query_model

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/examples",
    tags=["Examples"],
    responses={
        400: {"description": "Validation failed", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
    },
)

admin_only = require_role(UserRole.ADMIN)


def _view(example: Example) -> ExampleResponse:
    return ExampleResponse.model_validate(example)


def _views(examples: List[Example]) -> List[ExampleResponse]:
    return [_view(e) for e in examples]


# ── Collection queries ────────────────────────────────────────────────────


@router.get("", summary="List examples visible to the caller")
async def list_examples(
    query: ExampleListQuery = Depends(query_model(ExampleListQuery)),
    user: Optional[User] = Depends(get_optional_user),
    service: ExampleService = Depends(get_example_service),
):
    """
    Public examples plus the caller's own. Supports page, limit, status,
    isPublic, tags (comma-separated, any match), search, sortBy, order,
    userId, startDate and endDate.
    """
    page = await service.list(query, requester_id=user.id if user else None)
    return paginated(_views(page.data), page.total, page.page, page.limit)


@router.get("/popular", summary="Most viewed public examples")
async def popular_examples(
    query: PopularQuery = Depends(query_model(PopularQuery)),
    service: ExampleService = Depends(get_example_service),
):
    return success(_views(await service.get_popular(query.limit)))


@router.get(
    "/mine",
    summary="The caller's examples",
    dependencies=[Depends(get_current_user), Depends(subscription_limiter)],
)
async def my_examples(
    query: ExampleListQuery = Depends(query_model(ExampleListQuery)),
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    mine = query.model_copy(update={"user_id": user.id})
    page = await service.list(mine, requester_id=user.id)
    return paginated(_views(page.data), page.total, page.page, page.limit)


@router.get(
    "/stats",
    summary="Counts and views for the caller's examples",
    dependencies=[Depends(get_current_user), Depends(subscription_limiter)],
)
async def my_stats(
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    return success(await service.get_user_stats(user.id))


@router.get("/admin/all", summary="Every example, soft-deleted included (admin)")
async def list_all_examples(
    query: ExampleListQuery = Depends(query_model(ExampleListQuery)),
    _: User = Depends(admin_only),
    service: ExampleService = Depends(get_example_service),
):
    page = await service.list_all(query)
    data = [AdminExampleResponse.model_validate(e) for e in page.data]
    return paginated(data, page.total, page.page, page.limit)


@router.post("/admin/{example_id}/restore", summary="Restore a soft-deleted example (admin)")
async def restore_example(
    example_id: UUID,
    request: Request,
    user: User = Depends(admin_only),
    service: ExampleService = Depends(get_example_service),
):
    example = await service.restore(example_id, AuditContext.from_request(request, user))
    return success(AdminExampleResponse.model_validate(example))


@router.post("/bulk-delete", summary="Delete several examples")
async def bulk_delete_examples(
    body: BulkDeleteRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    result = await service.bulk_delete(body.ids, user.id, AuditContext.from_request(request, user))
    return success(result, meta={"message": f"{result.deleted} examples deleted successfully"})


# ── Single resource ───────────────────────────────────────────────────────


@router.get("/{example_id}", summary="Get one example")
async def get_example(
    example_id: UUID,
    view: bool = Query(default=False, description="Count this request as a view"),
    user: Optional[User] = Depends(get_optional_user),
    service: ExampleService = Depends(get_example_service),
):
    example = await service.get_by_id(
        example_id,
        requester_id=user.id if user else None,
        increment_view=view,
    )
    return success(_view(example))


@router.post(
    "",
    status_code=201,
    summary="Create an example",
    dependencies=[Depends(get_current_user), Depends(strict_limiter)],
)
async def create_example(
    body: ExampleCreate,
    request: Request,
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    example = await service.create(user.id, body, AuditContext.from_request(request, user))
    return created(_view(example), "Example created successfully")


@router.put("/{example_id}", summary="Update an example")
async def update_example(
    example_id: UUID,
    body: ExampleUpdate,
    request: Request,
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    example = await service.update(example_id, user.id, body, AuditContext.from_request(request, user))
    return success(_view(example))


@router.delete("/{example_id}", summary="Delete an example")
async def delete_example(
    example_id: UUID,
    request: Request,
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    await service.delete(example_id, user.id, AuditContext.from_request(request, user))
    return message("Example deleted successfully")


@router.post("/{example_id}/publish", summary="Publish an example")
async def publish_example(
    example_id: UUID,
    request: Request,
    body: Optional[PublishRequest] = None,
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    make_public = body.make_public if body is not None else True
    example = await service.publish(
        example_id,
        user.id,
        make_public=make_public,
        ctx=AuditContext.from_request(request, user),
    )
    return success(_view(example))


@router.post("/{example_id}/archive", summary="Archive an example")
async def archive_example(
    example_id: UUID,
    request: Request,
    user: User = Depends(get_current_user),
    service: ExampleService = Depends(get_example_service),
):
    example = await service.archive(example_id, user.id, AuditContext.from_request(request, user))
    return success(_view(example))
