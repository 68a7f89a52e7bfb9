"""
Keystone Backend — Payments (Stripe)
====================================

What:  Checkout / billing-portal sessions and subscription webhook handling.
How:   The stripe SDK is blocking, so every call runs in a worker thread
       (asyncio.to_thread). SDK failures become BadGatewayError.

Webhook events:
    checkout.session.completed     → subscription "pro", remember customer id
    customer.subscription.updated  → map the provider status (see STATUS_MAP)
    customer.subscription.deleted  → subscription "free"
    anything else                  → logged and acknowledged
Each subscription change writes an audit entry (subscribe / unsubscribe).
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

import stripe

from app.config import Settings
from app.exceptions import BadGatewayError, ValidationError
from app.models.enums import AuditAction, SubscriptionStatus
from app.models.user import User
from app.services.audit_service import AuditContext, AuditService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

RESOURCE = "subscription"

STATUS_MAP = {
    "active": SubscriptionStatus.PRO,
    "trialing": SubscriptionStatus.PRO,
    "canceled": SubscriptionStatus.CANCELLED,
    "unpaid": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


class PaymentService:
    def __init__(self, settings: Settings, client: Optional[stripe.StripeClient] = None):
        self._client = client or stripe.StripeClient(settings.stripe_secret_key)
        self._webhook_secret = settings.stripe_webhook_secret
        self._frontend_url = settings.primary_frontend_url

    async def create_checkout_session(self, user: User, price_id: str) -> str:
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self._frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._frontend_url}/pricing",
            "metadata": {"userId": str(user.id)},
        }
        if user.stripe_customer_id:
            params["customer"] = user.stripe_customer_id
        else:
            params["customer_email"] = user.email

        try:
            session = await asyncio.to_thread(self._client.checkout.sessions.create, params=params)
        except stripe.StripeError as e:
            logger.error("Checkout session failed for user %s: %s", user.id, e)
            raise BadGatewayError("Payment provider error")
        return session.url

    async def create_portal_session(self, customer_id: Optional[str]) -> str:
        if not customer_id:
            raise ValidationError("No billing account found for this user", field="customer")
        try:
            session = await asyncio.to_thread(
                self._client.billing_portal.sessions.create,
                params={"customer": customer_id, "return_url": f"{self._frontend_url}/settings"},
            )
        except stripe.StripeError as e:
            logger.error("Portal session failed for customer %s: %s", customer_id, e)
            raise BadGatewayError("Payment provider error")
        return session.url

    def construct_event(self, payload: bytes, signature: Optional[str]) -> stripe.Event:
        if not signature:
            raise ValidationError("Missing Stripe signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Stripe webhook rejected: %s", e)
            raise ValidationError("Invalid Stripe webhook")


class SubscriptionEvents:
    """Applies verified billing events to local accounts."""

    def __init__(self, users: UserService, audit: AuditService):
        self.users = users
        self.audit = audit

    async def _resolve_user(self, data: Dict[str, Any]) -> Optional[User]:
        user_id = (data.get("metadata") or {}).get("userId")
        if user_id:
            try:
                user = await self.users.get_by_id(uuid.UUID(user_id))
            except ValueError:
                user = None
            if user is not None:
                return user
        customer = data.get("customer")
        if customer:
            return await self.users.find_by_stripe_customer_id(customer)
        return None

    async def _apply(self, user: User, status: SubscriptionStatus, customer_id: Optional[str], event_type: str) -> None:
        previous = user.subscription
        await self.users.update_subscription(user, status, customer_id)
        action = AuditAction.SUBSCRIBE if status in (SubscriptionStatus.PRO, SubscriptionStatus.ENTERPRISE) else AuditAction.UNSUBSCRIBE
        await self.audit.log(
            action,
            RESOURCE,
            user.id,
            AuditContext.system(),
            user_id=user.id,
            metadata={"event": event_type},
            changes={"before": {"subscription": previous}, "after": {"subscription": user.subscription}},
        )

    async def handle(self, event: Dict[str, Any]) -> None:
        event_type = event["type"]
        data = event["data"]["object"]

        if event_type not in (
            "checkout.session.completed",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            logger.info("Unhandled Stripe event %s", event_type)
            return

        user = await self._resolve_user(data)
        if user is None:
            logger.warning("Stripe event %s for unknown user (customer=%s)", event_type, data.get("customer"))
            return

        if event_type == "checkout.session.completed":
            await self._apply(user, SubscriptionStatus.PRO, data.get("customer"), event_type)
        elif event_type == "customer.subscription.updated":
            status = STATUS_MAP.get(data.get("status", ""))
            if status is None:
                logger.info("Ignoring subscription status %s for user %s", data.get("status"), user.id)
                return
            await self._apply(user, status, None, event_type)
        else:
            await self._apply(user, SubscriptionStatus.FREE, None, event_type)
