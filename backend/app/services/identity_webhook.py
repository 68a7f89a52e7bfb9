"""
Keystone Backend — Identity Provider Webhooks
=============================================

What:  Verifies and applies account events pushed by the identity provider.
Why:   Accounts exist locally before a user's first API call, and profile,
       e-mail and deletion changes reach us without polling the provider.

Signature scheme (Svix, used by the provider):
    signed content  "{svix-id}.{svix-timestamp}.{raw body}"
    key             base64-decoded secret after the "whsec_" prefix
    signature       HMAC-SHA256, base64; the svix-signature header carries a
                    space-separated list of "v1,<signature>" entries
    replay window   svix-timestamp must be within 5 minutes of now

Events:
    user.created     create the account, queue the welcome e-mail
    user.updated     update the account (create it if we never saw it)
    user.deleted     soft delete
    email.created    primary address changed
    session.created  last login; failures are logged and ignored
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.exceptions import AppError, ValidationError
from app.jobs.queue import JobQueue
from app.models.enums import AuditAction
from app.models.user import User
from app.schemas.user import IdentityProfile
from app.services.audit_service import AuditContext, AuditService
from app.services.email_service import EmailService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
TIMESTAMP_TOLERANCE = 5 * 60
RESOURCE = "user"

INVALID_SIGNATURE = "Invalid webhook signature"


def _secret_bytes(secret: str) -> bytes:
    raw = secret[len(SECRET_PREFIX):] if secret.startswith(SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError):
        raise ValueError("Webhook secret is not valid base64")


def sign_payload(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    content = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Check the Svix headers against the raw body; returns the parsed event."""
    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signatures = headers.get("svix-signature")
    if not (msg_id and timestamp and signatures):
        raise ValidationError("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise ValidationError(INVALID_SIGNATURE)
    now = time.time() if now is None else now
    if abs(now - sent_at) > TIMESTAMP_TOLERANCE:
        raise ValidationError("Webhook timestamp outside the allowed window")

    expected = sign_payload(secret, msg_id, timestamp, body)
    for entry in signatures.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            break
    else:
        logger.warning("Identity webhook %s failed signature check", msg_id)
        raise ValidationError(INVALID_SIGNATURE)

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook payload is not valid JSON")
    if not isinstance(event, dict) or "type" not in event or not isinstance(event.get("data"), dict):
        raise ValidationError("Webhook payload is malformed")
    return event


def _primary_email(data: Dict[str, Any]) -> Dict[str, Any]:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for address in addresses:
        if address.get("id") == primary_id:
            return address
    return addresses[0] if addresses else {}


def profile_from_user_data(data: Dict[str, Any]) -> IdentityProfile:
    email = _primary_email(data)
    name = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
    try:
        return IdentityProfile(
            external_id=data.get("id") or "",
            email=email.get("email_address") or "",
            name=name or None,
            email_verified=(email.get("verification") or {}).get("status") == "verified",
            profile_image=data.get("image_url"),
        )
    except PydanticValidationError:
        raise ValidationError("Webhook user payload is missing an id or e-mail")


class IdentityEvents:
    def __init__(
        self,
        users: UserService,
        audit: AuditService,
        jobs: Optional[JobQueue] = None,
        email: Optional[EmailService] = None,
    ):
        self.users = users
        self.audit = audit
        self.jobs = jobs
        self.email = email

    async def handle(self, event: Dict[str, Any]) -> None:
        event_type = event["type"]
        data = event["data"]
        logger.info("Identity webhook %s for %s", event_type, data.get("id"))

        handlers = {
            "user.created": self.user_created,
            "user.updated": self.user_updated,
            "user.deleted": self.user_deleted,
            "email.created": self.email_created,
            "session.created": self.session_created,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled identity webhook event %s", event_type)
            return
        await handler(data)

    async def user_created(self, data: Dict[str, Any]) -> Optional[User]:
        profile = profile_from_user_data(data)
        existing = await self.users.find_by_external_id(profile.external_id, include_deleted=True)
        if existing is not None:
            logger.warning("Identity user %s already exists", profile.external_id)
            return existing

        user = await self.users.create(profile)
        await self.audit.log(
            AuditAction.CREATE,
            RESOURCE,
            user.id,
            AuditContext.system(),
            user_id=user.id,
            metadata={"source": "identity-webhook"},
        )
        await self._welcome(user)
        return user

    async def user_updated(self, data: Dict[str, Any]) -> Optional[User]:
        profile = profile_from_user_data(data)
        user = await self.users.find_by_external_id(profile.external_id)
        if user is None:
            return await self.user_created(data)
        return await self.users.update_profile(
            user,
            email=profile.email,
            name=profile.name,
            email_verified=bool(profile.email_verified),
            profile_image=profile.profile_image,
        )

    async def user_deleted(self, data: Dict[str, Any]) -> None:
        user = await self.users.find_by_external_id(data.get("id") or "")
        if user is None:
            logger.info("Identity user %s already gone", data.get("id"))
            return
        if await self.users.soft_delete(user):
            await self.audit.log(
                AuditAction.DELETE,
                RESOURCE,
                user.id,
                AuditContext.system(),
                user_id=user.id,
                metadata={"source": "identity-webhook"},
            )

    async def email_created(self, data: Dict[str, Any]) -> None:
        if not data.get("primary"):
            return
        user = await self.users.find_by_external_id(data.get("user_id") or "")
        if user is None or not data.get("email_address"):
            return
        await self.users.update_profile(
            user,
            email=data["email_address"],
            email_verified=(data.get("verification") or {}).get("status") == "verified",
        )
        logger.info("Primary e-mail updated for user %s", user.id)

    async def session_created(self, data: Dict[str, Any]) -> None:
        try:
            user = await self.users.find_by_external_id(data.get("user_id") or "")
            if user is not None:
                await self.users.update_last_login(user)
        except SQLAlchemyError as e:
            logger.error("Could not record login for %s: %s", data.get("user_id"), e)

    async def _welcome(self, user: User) -> None:
        if self.jobs is not None:
            await self.jobs.enqueue_welcome_email(user.email, user.name)
        elif self.email is not None:
            try:
                await self.email.send_welcome_email(user.email, user.name)
            except AppError as e:
                logger.error("Welcome e-mail to %s failed: %s", user.email, e.message)
