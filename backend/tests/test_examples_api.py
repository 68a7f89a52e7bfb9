"""
Keystone Backend — Example Endpoint Tests
=========================================

What:  The HTTP contract of /api/examples with the service and the caller
       swapped through dependency overrides.

What we test:
    ✅ Success envelope, status codes, camelCase output
    ✅ Query and body validation errors (400, every field reported)
    ✅ Service errors rendered with the right status and code
    ✅ Admin-only routes refuse regular users
    ✅ Rate limit headers and 429
"""

import uuid
from unittest.mock import AsyncMock

import pytest

from app.dependencies import get_current_user, get_example_service, get_optional_user
from app.exceptions import ConflictError, ForbiddenError, NotFoundError
from app.middleware.rate_limit import strict_limiter
from app.models.enums import ExampleStatus
from app.schemas.example import BulkDeleteResult, ExampleStats, StatusCounts
from app.services.example_service import ExamplePage, ExampleService
from conftest import make_example


@pytest.fixture
def service(app):
    mock = AsyncMock(spec=ExampleService)
    app.dependency_overrides[get_example_service] = lambda: mock
    return mock


@pytest.fixture
def signed_in(app, user):
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_optional_user] = lambda: user
    return user


@pytest.fixture
def anonymous(app):
    app.dependency_overrides[get_optional_user] = lambda: None


class TestListing:
    @pytest.mark.asyncio
    async def test_list_returns_paginated_envelope(self, test_client, service, anonymous):
        rows = [make_example(is_public=True, name="One"), make_example(is_public=True, name="Two")]
        service.list.return_value = ExamplePage(data=rows, total=2, page=1, limit=20)

        response = await test_client.get("/api/examples", params={"tags": "a,b", "sortBy": "name"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert [e["name"] for e in body["data"]] == ["One", "Two"]
        assert body["data"][0]["isPublic"] is True
        assert "deletedAt" not in body["data"][0]
        assert body["meta"] == {
            "total": 2,
            "page": 1,
            "limit": 20,
            "totalPages": 1,
            "hasNext": False,
            "hasPrev": False,
        }
        query = service.list.await_args.args[0]
        assert query.tags == ["a", "b"]
        assert service.list.await_args.kwargs["requester_id"] is None

    @pytest.mark.asyncio
    async def test_invalid_query_reports_every_field(self, test_client, service, anonymous):
        response = await test_client.get("/api/examples", params={"page": "0", "limit": "500"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert {d["field"] for d in error["details"]} == {"page", "limit"}
        assert all(d["location"] == "query" for d in error["details"])
        service.list.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mine_is_scoped_to_caller(self, test_client, service, signed_in):
        service.list.return_value = ExamplePage(data=[], total=0, page=1, limit=20)

        response = await test_client.get("/api/examples/mine")

        assert response.status_code == 200
        query = service.list.await_args.args[0]
        assert query.user_id == signed_in.id

    @pytest.mark.asyncio
    async def test_stats(self, test_client, service, signed_in):
        service.get_user_stats.return_value = ExampleStats(
            total=1,
            by_status=StatusCounts(draft=1),
            total_views=0,
        )
        response = await test_client.get("/api/examples/stats")
        assert response.status_code == 200
        assert response.json()["data"]["byStatus"] == {"draft": 1, "published": 0, "archived": 0}
        assert response.headers["X-RateLimit-Limit"] == "100"

    @pytest.mark.asyncio
    async def test_popular(self, test_client, service):
        service.get_popular.return_value = [make_example(is_public=True, status="published")]
        response = await test_client.get("/api/examples/popular", params={"limit": "5"})
        assert response.status_code == 200
        service.get_popular.assert_awaited_once_with(5)


class TestSingleResource:
    @pytest.mark.asyncio
    async def test_get_counts_view_when_asked(self, test_client, service, anonymous):
        example = make_example(is_public=True)
        service.get_by_id.return_value = example

        response = await test_client.get(f"/api/examples/{example.id}", params={"view": "true"})

        assert response.status_code == 200
        assert response.json()["data"]["id"] == str(example.id)
        assert service.get_by_id.await_args.kwargs["increment_view"] is True

    @pytest.mark.asyncio
    async def test_get_invalid_id(self, test_client, service, anonymous):
        response = await test_client.get("/api/examples/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["location"] == "path"

    @pytest.mark.asyncio
    async def test_get_missing(self, test_client, service, anonymous):
        service.get_by_id.side_effect = NotFoundError("Example not found")
        response = await test_client.get(f"/api/examples/{uuid.uuid4()}")
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["requestId"] == response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_create(self, test_client, service, signed_in):
        example = make_example(user_id=signed_in.id, name="Fresh")
        service.create.return_value = example

        response = await test_client.post("/api/examples", json={"name": " Fresh ", "tags": ["X"]})

        assert response.status_code == 201
        body = response.json()
        assert body["data"]["name"] == "Fresh"
        assert body["meta"] == {"message": "Example created successfully"}
        user_id, data, ctx = service.create.await_args.args
        assert user_id == signed_in.id
        assert data.name == "Fresh" and data.tags == ["x"]
        assert ctx.request_id == response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_create_validation(self, test_client, service, signed_in):
        response = await test_client.post("/api/examples", json={"name": "", "status": "deleted"})
        assert response.status_code == 400
        fields = {d["field"] for d in response.json()["error"]["details"]}
        assert fields == {"name", "status"}

    @pytest.mark.asyncio
    async def test_create_conflict(self, test_client, service, signed_in):
        service.create.side_effect = ConflictError("An example with this name already exists")
        response = await test_client.post("/api/examples", json={"name": "Dup"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_update_forbidden(self, test_client, service, signed_in):
        service.update.side_effect = ForbiddenError("You can only edit your own examples")
        response = await test_client.put(f"/api/examples/{uuid.uuid4()}", json={"name": "x"})
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "You can only edit your own examples"

    @pytest.mark.asyncio
    async def test_delete(self, test_client, service, signed_in):
        service.delete.return_value = None
        response = await test_client.delete(f"/api/examples/{uuid.uuid4()}")
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Example deleted successfully"}

    @pytest.mark.asyncio
    async def test_publish_defaults_to_public(self, test_client, service, signed_in):
        service.publish.return_value = make_example(status=ExampleStatus.PUBLISHED.value, is_public=True)
        response = await test_client.post(f"/api/examples/{uuid.uuid4()}/publish")
        assert response.status_code == 200
        assert service.publish.await_args.kwargs["make_public"] is True

    @pytest.mark.asyncio
    async def test_publish_private(self, test_client, service, signed_in):
        service.publish.return_value = make_example(status=ExampleStatus.PUBLISHED.value)
        await test_client.post(f"/api/examples/{uuid.uuid4()}/publish", json={"makePublic": False})
        assert service.publish.await_args.kwargs["make_public"] is False

    @pytest.mark.asyncio
    async def test_bulk_delete(self, test_client, service, signed_in):
        failed = str(uuid.uuid4())
        service.bulk_delete.return_value = BulkDeleteResult(deleted=2, failed=[failed])
        response = await test_client.post(
            "/api/examples/bulk-delete",
            json={"ids": [str(uuid.uuid4()), str(uuid.uuid4()), failed]},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["data"] == {"deleted": 2, "failed": [failed]}
        assert body["meta"]["message"] == "2 examples deleted successfully"


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_regular_user_refused(self, test_client, service, signed_in):
        response = await test_client.get("/api/examples/admin/all")
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Access denied. Required role(s): admin"
        service.list_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_admin_sees_deleted_at(self, app, test_client, service, admin):
        app.dependency_overrides[get_current_user] = lambda: admin
        service.list_all.return_value = ExamplePage(data=[make_example()], total=1, page=1, limit=20)

        response = await test_client.get("/api/examples/admin/all")

        assert response.status_code == 200
        assert "deletedAt" in response.json()["data"][0]


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_headers_present(self, test_client, service, anonymous):
        service.list.return_value = ExamplePage(data=[], total=0, page=1, limit=20)
        response = await test_client.get("/api/examples")
        assert response.headers["X-RateLimit-Limit"] == "500"
        assert response.headers["X-RateLimit-Remaining"] == "499"
        assert int(response.headers["X-RateLimit-Reset"]) > 0

    @pytest.mark.asyncio
    async def test_strict_limit_returns_429(self, test_client, service, signed_in, monkeypatch):
        monkeypatch.setattr(strict_limiter, "max_requests", 2)
        service.create.return_value = make_example(user_id=signed_in.id)

        statuses = [
            (await test_client.post("/api/examples", json={"name": f"n{i}"})).status_code
            for i in range(3)
        ]

        assert statuses == [201, 201, 429]
        response = await test_client.post("/api/examples", json={"name": "again"})
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Remaining"] == "0"
