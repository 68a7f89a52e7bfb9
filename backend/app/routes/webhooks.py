"""
Keystone Backend — Webhook Receivers
====================================

What:  Inbound events from the identity provider and the payment provider.
How:   Both read the raw body (signatures cover the exact bytes), verify it,
       apply the event inside the request session and answer {"received": true}.
       A bad signature or payload is a 400; the provider retries anything else
       that fails.

    POST /api/webhooks/identity   Svix-signed account events
    POST /api/webhooks/stripe     Stripe-signed billing events
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from app.dependencies import (
    get_audit_service,
    get_email_service,
    get_job_queue,
    get_payment_service,
    get_resources,
    get_subscription_events,
    get_user_service,
)
from app.exceptions import ServiceUnavailableError
from app.jobs.queue import JobQueue
from app.lifecycle import AppResources
from app.middleware.rate_limit import webhook_limiter
from app.schemas.common import ErrorResponse
from app.schemas.payments import WebhookReceipt
from app.services.audit_service import AuditService
from app.services.email_service import EmailService
from app.services.identity_webhook import IdentityEvents, verify_signature
from app.services.payment_service import PaymentService, SubscriptionEvents
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/webhooks",
    tags=["Webhooks"],
    dependencies=[Depends(webhook_limiter)],
    responses={400: {"description": "Signature or payload rejected", "model": ErrorResponse}},
)


@router.post("/identity", response_model=WebhookReceipt, summary="Identity provider events")
async def identity_webhook(
    request: Request,
    resources: AppResources = Depends(get_resources),
    users: UserService = Depends(get_user_service),
    audit: AuditService = Depends(get_audit_service),
    jobs: Optional[JobQueue] = Depends(get_job_queue),
    email: Optional[EmailService] = Depends(get_email_service),
) -> WebhookReceipt:
    secret = resources.settings.auth_webhook_secret
    if not secret:
        raise ServiceUnavailableError("Identity webhooks are not configured")

    event = verify_signature(secret, request.headers, await request.body())
    await IdentityEvents(users, audit, jobs=jobs, email=email).handle(event)
    return WebhookReceipt()


@router.post("/stripe", response_model=WebhookReceipt, summary="Payment provider events")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    payments: PaymentService = Depends(get_payment_service),
    events: SubscriptionEvents = Depends(get_subscription_events),
) -> WebhookReceipt:
    event = payments.construct_event(await request.body(), stripe_signature)
    logger.info("Stripe webhook %s (%s)", event["type"], event.get("id"))
    await events.handle(event)
    return WebhookReceipt()
