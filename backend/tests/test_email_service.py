"""
Keystone Backend — E-mail Service Tests
=======================================

What:  EmailService against an httpx.MockTransport standing in for SendGrid.

What we test:
    ✅ Request shape (personalizations, from, text + html content)
    ✅ Plain-text fallback generated from HTML
    ✅ Provider rejection and network failure → BadGatewayError
    ✅ Welcome e-mail escapes the recipient's name
"""

import json

import httpx
import pytest

from app.exceptions import BadGatewayError
from app.services.email_service import SENDGRID_SEND_URL, EmailService, render_welcome, strip_html
from conftest import build_settings


def email_settings():
    return build_settings(sendgrid_api_key="SG.test", sendgrid_from_email="noreply@example.com")


class TestEmailService:
    def setup_method(self):
        self.requests = []
        self.status = 202

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(self.status, text="" if self.status < 400 else "bad request")

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            headers={"Authorization": "Bearer SG.test"},
        )
        self.service = EmailService(email_settings(), client=client)

    @pytest.mark.asyncio
    async def test_send_email_payload(self):
        await self.service.send_email("to@example.com", "Hello", "<p>Hi &amp; welcome</p>")

        request = self.requests[0]
        assert str(request.url) == SENDGRID_SEND_URL
        assert request.headers["Authorization"] == "Bearer SG.test"
        payload = json.loads(request.content)
        assert payload["personalizations"] == [{"to": [{"email": "to@example.com"}]}]
        assert payload["from"] == {"email": "noreply@example.com"}
        assert payload["subject"] == "Hello"
        assert payload["content"] == [
            {"type": "text/plain", "value": "Hi & welcome"},
            {"type": "text/html", "value": "<p>Hi &amp; welcome</p>"},
        ]

    @pytest.mark.asyncio
    async def test_explicit_text_is_kept(self):
        await self.service.send_email("to@example.com", "Hello", "<p>x</p>", text="plain")
        payload = json.loads(self.requests[0].content)
        assert payload["content"][0]["value"] == "plain"

    @pytest.mark.asyncio
    async def test_provider_rejection(self):
        self.status = 400
        with pytest.raises(BadGatewayError) as exc:
            await self.service.send_email("to@example.com", "Hello", "<p>x</p>")
        assert exc.value.context == {"status": 400}

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def broken(request):
            raise httpx.ConnectError("unreachable", request=request)

        service = EmailService(email_settings(), client=httpx.AsyncClient(transport=httpx.MockTransport(broken)))
        with pytest.raises(BadGatewayError) as exc:
            await service.send_email("to@example.com", "Hello", "<p>x</p>")
        assert exc.value.message == "E-mail provider unavailable"

    @pytest.mark.asyncio
    async def test_welcome_email(self):
        await self.service.send_welcome_email("to@example.com", "<Ada>")
        payload = json.loads(self.requests[0].content)
        assert payload["subject"] == "Welcome!"
        assert "Welcome, &lt;Ada&gt;!" in payload["content"][1]["value"]

    @pytest.mark.asyncio
    async def test_close(self):
        await self.service.close()
        assert self.service._client.is_closed


class TestHelpers:
    def test_strip_html(self):
        assert strip_html("<p>Fish &amp; chips</p>   <b>tonight</b>") == "Fish & chips tonight"

    def test_render_welcome_without_name(self):
        assert "Welcome, there!" in render_welcome("there")
