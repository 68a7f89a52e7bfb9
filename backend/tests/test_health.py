"""
Keystone Backend — Health, Metrics & Cross-Cutting HTTP Tests
=============================================================

What we test:
    ✅ /health: ok vs degraded (503), only enabled services listed
    ✅ /metrics and /api shapes
    ✅ Unknown routes → 404 envelope
    ✅ Unexpected exceptions → 500 envelope with the request id
    ✅ Request id echoing and security headers on every response
"""

from unittest.mock import AsyncMock

import pytest

from app import __version__
from app.dependencies import get_example_service
from app.lifecycle import AppResources
from app.services.example_service import ExampleService
from conftest import build_settings


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, test_client, resources):
        resources.database.ping = AsyncMock(return_value=True)

        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["services"] == {"database": True}
        assert body["version"] == __version__
        assert body["uptime"] >= 0

    @pytest.mark.asyncio
    async def test_database_down_is_degraded(self, test_client):
        # The test resources never connect, so the ping fails
        response = await test_client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_enabled_integrations_are_listed(self, app, test_client):
        resources = AppResources(build_settings(stripe_secret_key="sk_test", stripe_webhook_secret="whsec_x"))
        resources.database.ping = AsyncMock(return_value=True)
        app.state.resources = resources

        response = await test_client.get("/health")

        assert response.json()["services"] == {"database": True, "stripe": True}

    @pytest.mark.asyncio
    async def test_metrics(self, test_client):
        response = await test_client.get("/metrics")
        assert response.status_code == 200
        body = response.json()
        assert body["memory"]["rss"] > 0
        assert set(body["cpu"]) == {"user", "system", "percent"}

    @pytest.mark.asyncio
    async def test_api_info(self, test_client):
        response = await test_client.get("/api")
        assert response.json() == {
            "name": "Keystone API",
            "version": __version__,
            "environment": "development",
            "documentation": "/docs",
            "features": [],
        }


class TestCrossCutting:
    @pytest.mark.asyncio
    async def test_unknown_route(self, test_client):
        response = await test_client.get("/api/nothing-here")
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["message"] == "Route GET /api/nothing-here not found"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500_envelope(self, app, test_client):
        service = AsyncMock(spec=ExampleService)
        service.get_popular.side_effect = RuntimeError("kaboom")
        app.dependency_overrides[get_example_service] = lambda: service

        response = await test_client.get("/api/examples/popular")

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert body["error"]["message"] == "kaboom"
        assert "RuntimeError" in body["error"]["stack"]
        assert body["error"]["requestId"] == response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_client_request_id_is_echoed(self, test_client):
        response = await test_client.get("/api", headers={"X-Request-ID": "req-from-client"})
        assert response.headers["X-Request-ID"] == "req-from-client"

    @pytest.mark.asyncio
    async def test_generated_request_id(self, test_client):
        response = await test_client.get("/api")
        assert len(response.headers["X-Request-ID"]) == 32

    @pytest.mark.asyncio
    async def test_security_headers(self, test_client):
        response = await test_client.get("/api")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Strict-Transport-Security" not in response.headers

    @pytest.mark.asyncio
    async def test_cors_preflight_for_local_origin(self, test_client):
        response = await test_client.options(
            "/api/examples",
            headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
