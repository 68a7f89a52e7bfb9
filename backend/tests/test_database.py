"""
Keystone Backend — Request Session Tests
========================================

What:  The per-request session behind every service dependency.

What we test:
    ✅ The commit happens before the response is sent
    ✅ A failed commit rolls back and reaches the client as a 500 envelope
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import Depends

from app.database import get_db_session
from app.dependencies import get_audit_service
from app.services.audit_service import AuditService


class StubSession:
    def __init__(self, commit_error=None):
        self.commit = AsyncMock(side_effect=commit_error)
        self.rollback = AsyncMock()
        self.close = AsyncMock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class TestRequestSession:
    @pytest.fixture
    def write_route(self, app):
        # Drop the conftest override so the real session dependency runs
        app.dependency_overrides.pop(get_db_session, None)

        @app.post("/audited-write", status_code=201)
        async def audited_write(audit: AuditService = Depends(get_audit_service)):
            return {"ok": True}

        return "/audited-write"

    @pytest.mark.asyncio
    async def test_commit_before_response(self, test_client, resources, write_route):
        session = StubSession()
        resources.database.session = lambda: session

        response = await test_client.post(write_route)

        assert response.status_code == 201
        session.commit.assert_awaited_once()
        session.rollback.assert_not_awaited()
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_commit_is_500(self, test_client, resources, write_route):
        session = StubSession(commit_error=RuntimeError("commit failed"))
        resources.database.session = lambda: session

        response = await test_client.post(write_route)

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert error["message"] == "commit failed"
        session.rollback.assert_awaited_once()
