"""
Keystone Backend — Payment Routes
=================================

    POST /api/payments/checkout   {priceId} → {url}   start a subscription checkout
    POST /api/payments/portal               → {url}   open the billing portal

Both need an authenticated user and the stripe feature; without it the
dependency answers 503.
"""

from fastapi import APIRouter, Depends

from app.dependencies import get_payment_service, require_permission
from app.models.user import User
from app.responses import success
from app.schemas.payments import CheckoutRequest, SessionUrl
from app.services.payment_service import PaymentService

router = APIRouter(prefix="/api/payments", tags=["Payments"])

can_manage_billing = require_permission("payments:manage:own")


@router.post("/checkout", summary="Create a checkout session")
async def create_checkout(
    body: CheckoutRequest,
    user: User = Depends(can_manage_billing),
    payments: PaymentService = Depends(get_payment_service),
):
    url = await payments.create_checkout_session(user, body.price_id)
    return success(SessionUrl(url=url))


@router.post("/portal", summary="Create a billing portal session")
async def create_portal(
    user: User = Depends(can_manage_billing),
    payments: PaymentService = Depends(get_payment_service),
):
    url = await payments.create_portal_session(user.stripe_customer_id)
    return success(SessionUrl(url=url))
