"""Payments request/response contracts."""

from pydantic import Field

from app.schemas.common import CamelModel


class CheckoutRequest(CamelModel):
    price_id: str = Field(min_length=1, description="Billing provider price identifier")


class SessionUrl(CamelModel):
    url: str


class WebhookReceipt(CamelModel):
    received: bool = True
