"""
Keystone Backend — Payments Tests
=================================

What we test:
    ✅ Checkout / portal sessions built with the right parameters
    ✅ Provider failures surface as 502
    ✅ Webhook signature checking (stripe.Webhook)
    ✅ Subscription events mapped onto the local account and audited
    ✅ /api/payments routes (503 when not configured)
"""

import hashlib
import hmac
import json
import time
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from app.dependencies import get_current_user, get_payment_service
from app.exceptions import BadGatewayError, ValidationError
from app.models.enums import AuditAction, SubscriptionStatus
from app.services.audit_service import AuditService
from app.services.payment_service import PaymentService, SubscriptionEvents
from app.services.user_service import UserService
from conftest import build_settings, make_user

WEBHOOK_SECRET = "whsec_stripe_test"


def stripe_settings():
    return build_settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        frontend_url="https://app.example.com",
    )


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


class TestPaymentService:
    def setup_method(self):
        self.client = MagicMock()
        self.client.checkout.sessions.create.return_value = SimpleNamespace(url="https://checkout/s1")
        self.client.billing_portal.sessions.create.return_value = SimpleNamespace(url="https://portal/p1")
        self.service = PaymentService(stripe_settings(), client=self.client)

    @pytest.mark.asyncio
    async def test_checkout_for_new_customer(self):
        user = make_user(email="buyer@example.com")

        url = await self.service.create_checkout_session(user, "price_pro")

        assert url == "https://checkout/s1"
        params = self.client.checkout.sessions.create.call_args.kwargs["params"]
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]
        assert params["customer_email"] == "buyer@example.com"
        assert "customer" not in params
        assert params["metadata"] == {"userId": str(user.id)}
        assert params["success_url"].startswith("https://app.example.com/success")

    @pytest.mark.asyncio
    async def test_checkout_reuses_customer(self):
        await self.service.create_checkout_session(make_user(stripe_customer_id="cus_1"), "price_pro")
        params = self.client.checkout.sessions.create.call_args.kwargs["params"]
        assert params["customer"] == "cus_1"
        assert "customer_email" not in params

    @pytest.mark.asyncio
    async def test_provider_error_is_bad_gateway(self):
        self.client.checkout.sessions.create.side_effect = stripe.StripeError("boom")
        with pytest.raises(BadGatewayError):
            await self.service.create_checkout_session(make_user(), "price_pro")

    @pytest.mark.asyncio
    async def test_portal_requires_customer(self):
        with pytest.raises(ValidationError) as exc:
            await self.service.create_portal_session(None)
        assert exc.value.message == "No billing account found for this user"

    @pytest.mark.asyncio
    async def test_portal(self):
        assert await self.service.create_portal_session("cus_1") == "https://portal/p1"
        params = self.client.billing_portal.sessions.create.call_args.kwargs["params"]
        assert params == {"customer": "cus_1", "return_url": "https://app.example.com/settings"}


class TestWebhookVerification:
    def setup_method(self):
        self.service = PaymentService(stripe_settings(), client=MagicMock())
        self.payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "customer.subscription.deleted",
            "data": {"object": {"customer": "cus_1"}},
        }).encode()

    def test_missing_signature(self):
        with pytest.raises(ValidationError) as exc:
            self.service.construct_event(self.payload, None)
        assert exc.value.message == "Missing Stripe signature"

    def test_bad_signature(self):
        with pytest.raises(ValidationError) as exc:
            self.service.construct_event(self.payload, stripe_signature(self.payload, secret="whsec_other"))
        assert exc.value.message == "Invalid Stripe webhook"

    def test_valid_signature(self):
        event = self.service.construct_event(self.payload, stripe_signature(self.payload))
        assert event["type"] == "customer.subscription.deleted"


class TestSubscriptionEvents:
    def setup_method(self):
        self.users = AsyncMock(spec=UserService)
        self.audit = AsyncMock(spec=AuditService)
        self.events = SubscriptionEvents(self.users, self.audit)
        self.user = make_user()

        async def update_subscription(user, status, customer_id=None):
            user.subscription = SubscriptionStatus(status).value
            return user

        self.users.update_subscription.side_effect = update_subscription

    @staticmethod
    def event(event_type, **data):
        return {"type": event_type, "data": {"object": data}}

    @pytest.mark.asyncio
    async def test_checkout_completed_upgrades_by_metadata(self):
        self.users.get_by_id.return_value = self.user

        await self.events.handle(
            self.event("checkout.session.completed", customer="cus_9", metadata={"userId": str(self.user.id)})
        )

        self.users.update_subscription.assert_awaited_once_with(self.user, SubscriptionStatus.PRO, "cus_9")
        args = self.audit.log.await_args
        assert args.args[0] is AuditAction.SUBSCRIBE
        assert args.kwargs["changes"] == {
            "before": {"subscription": "free"},
            "after": {"subscription": "pro"},
        }

    @pytest.mark.asyncio
    async def test_falls_back_to_customer_id(self):
        self.users.get_by_id.return_value = None
        self.users.find_by_stripe_customer_id.return_value = self.user

        await self.events.handle(
            self.event("customer.subscription.updated", customer="cus_9", status="canceled",
                       metadata={"userId": str(uuid.uuid4())})
        )

        self.users.find_by_stripe_customer_id.assert_awaited_once_with("cus_9")
        assert self.user.subscription == "cancelled"
        assert self.audit.log.await_args.args[0] is AuditAction.UNSUBSCRIBE

    @pytest.mark.asyncio
    async def test_unmapped_status_ignored(self):
        self.users.find_by_stripe_customer_id.return_value = self.user
        await self.events.handle(self.event("customer.subscription.updated", customer="cus_9", status="past_due"))
        self.users.update_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deleted_downgrades_to_free(self):
        self.user.subscription = "pro"
        self.users.find_by_stripe_customer_id.return_value = self.user

        await self.events.handle(self.event("customer.subscription.deleted", customer="cus_9"))

        assert self.user.subscription == "free"

    @pytest.mark.asyncio
    async def test_unknown_user_is_acknowledged(self):
        self.users.find_by_stripe_customer_id.return_value = None
        await self.events.handle(self.event("customer.subscription.deleted", customer="cus_404"))
        self.audit.log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self):
        await self.events.handle(self.event("invoice.paid", customer="cus_9"))
        assert self.users.method_calls == []


class TestPaymentRoutes:
    @pytest.fixture(autouse=True)
    def signed_in(self, app, user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    @pytest.mark.asyncio
    async def test_not_configured(self, test_client):
        response = await test_client.post("/api/payments/checkout", json={"priceId": "price_pro"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_checkout(self, app, test_client, signed_in):
        payments = AsyncMock(spec=PaymentService)
        payments.create_checkout_session.return_value = "https://checkout/s1"
        app.dependency_overrides[get_payment_service] = lambda: payments

        response = await test_client.post("/api/payments/checkout", json={"priceId": "price_pro"})

        assert response.status_code == 200
        assert response.json()["data"] == {"url": "https://checkout/s1"}
        payments.create_checkout_session.assert_awaited_once_with(signed_in, "price_pro")

    @pytest.mark.asyncio
    async def test_checkout_requires_price(self, app, test_client):
        app.dependency_overrides[get_payment_service] = lambda: AsyncMock(spec=PaymentService)
        response = await test_client.post("/api/payments/checkout", json={})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stripe_webhook_route(self, app, test_client):
        payments = MagicMock(spec=PaymentService)
        payments.construct_event.return_value = {"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}
        app.dependency_overrides[get_payment_service] = lambda: payments

        response = await test_client.post(
            "/api/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=abc"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        payments.construct_event.assert_called_once_with(b"{}", "t=1,v1=abc")
