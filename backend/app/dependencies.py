"""
Keystone Backend — FastAPI Dependencies
=======================================

What:  Everything route handlers receive through `Depends()`: the resource
       container, request-scoped services, the authenticated user and the
       role/permission gates.
How:   Services are built per request around the request's database session
       (app.database.get_db_session), so a mutation and its audit row share one
       transaction. The session is function-scoped: it commits when the handler
       returns and before the response is sent, so a failed commit is a 5xx.
       Process-wide handles come from `app.state.resources`.

Authentication:
    get_current_user    bearer token required; find-or-create the local account
    get_optional_user   anonymous when the token is missing or invalid
    Without AUTH_JWT_SECRET, development requests run as a local admin account
    (dev-user / dev@example.com); other environments reject them.

The resolved user is also left on `request.state.user` for the rate limiter's
key function and the error handler's log context.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_session
from app.exceptions import ForbiddenError, ServiceUnavailableError, UnauthorizedError
from app.jobs.queue import JobQueue
from app.lifecycle import AppResources
from app.models.enums import UserRole
from app.models.user import User
from app.rbac import has_permission
from app.repositories.example_repository import ExampleRepository
from app.schemas.user import IdentityProfile
from app.services.audit_service import AuditService
from app.services.auth_service import extract_bearer_token
from app.services.email_service import EmailService
from app.services.example_service import ExampleService
from app.services.payment_service import PaymentService, SubscriptionEvents
from app.services.realtime import RealtimeHub
from app.services.storage_service import StorageService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

DEV_PROFILE = IdentityProfile(
    external_id="dev-user",
    email="dev@example.com",
    name="Developer",
    email_verified=True,
)


# ── Resources ─────────────────────────────────────────────────────────────


def get_resources(request: Request) -> AppResources:
    return request.app.state.resources


def get_realtime(resources: AppResources = Depends(get_resources)) -> RealtimeHub:
    return resources.realtime


def get_job_queue(resources: AppResources = Depends(get_resources)) -> Optional[JobQueue]:
    return resources.jobs


def get_email_service(resources: AppResources = Depends(get_resources)) -> Optional[EmailService]:
    return resources.email


def get_payment_service(resources: AppResources = Depends(get_resources)) -> PaymentService:
    if resources.payments is None:
        raise ServiceUnavailableError("Payments are not configured")
    return resources.payments


def get_storage_service(resources: AppResources = Depends(get_resources)) -> StorageService:
    if resources.storage is None:
        raise ServiceUnavailableError("Uploads are not configured")
    return resources.storage


# ── Request-scoped services ───────────────────────────────────────────────


def get_audit_service(session: AsyncSession = Depends(get_db_session, scope="function")) -> AuditService:
    return AuditService(session)


def get_user_service(session: AsyncSession = Depends(get_db_session, scope="function")) -> UserService:
    return UserService(session)


def get_example_service(
    session: AsyncSession = Depends(get_db_session, scope="function"),
    audit: AuditService = Depends(get_audit_service),
    realtime: RealtimeHub = Depends(get_realtime),
) -> ExampleService:
    return ExampleService(ExampleRepository(session), audit, notifier=realtime)


def get_subscription_events(
    users: UserService = Depends(get_user_service),
    audit: AuditService = Depends(get_audit_service),
) -> SubscriptionEvents:
    return SubscriptionEvents(users, audit)


# ── Authentication ────────────────────────────────────────────────────────


async def _dev_user(users: UserService) -> User:
    user, created = await users.find_or_create_from_identity(DEV_PROFILE, role=UserRole.ADMIN)
    if created:
        logger.info("Created local development account %s", user.email)
    return user


async def _account_for(profile: IdentityProfile, users: UserService) -> User:
    user, _ = await users.find_or_create_from_identity(profile)
    if user.is_deleted:
        raise UnauthorizedError("User account is disabled")
    await users.update_last_login(user)
    return user


async def authenticate(resources: AppResources, users: UserService, token: Optional[str]) -> User:
    """Resolve the account behind a raw token (HTTP and WebSocket share this)."""
    verifier = resources.token_verifier
    if verifier is None:
        if not resources.settings.is_development:
            raise UnauthorizedError("Authentication not configured")
        return await _dev_user(users)
    if token is None:
        raise UnauthorizedError("No authentication token provided")
    return await _account_for(verifier.verify(token), users)


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    resources: AppResources = Depends(get_resources),
    users: UserService = Depends(get_user_service),
) -> User:
    user = await authenticate(resources, users, extract_bearer_token(authorization))
    request.state.user = user
    return user


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    resources: AppResources = Depends(get_resources),
    users: UserService = Depends(get_user_service),
) -> Optional[User]:
    verifier = resources.token_verifier
    if verifier is None:
        if not resources.settings.is_development:
            return None
        user = await _dev_user(users)
    else:
        token = extract_bearer_token(authorization)
        if token is None:
            return None
        try:
            user = await _account_for(verifier.verify(token), users)
        except UnauthorizedError:
            return None

    request.state.user = user
    return user


def require_role(*roles: UserRole) -> Callable:
    """
    Dependency factory: the current user must hold one of `roles`.

    Usage:
        @router.get("/admin/all")
        async def list_all(user: User = Depends(require_role(UserRole.ADMIN))):
    """
    allowed = [UserRole(role).value for role in roles]

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise ForbiddenError(f"Access denied. Required role(s): {', '.join(allowed)}")
        return user

    return dependency


def require_permission(permission: str) -> Callable:
    async def dependency(user: User = Depends(get_current_user)) -> User:
        if not has_permission(user.role, permission):
            raise ForbiddenError("Insufficient permissions", context={"permission": permission, "role": user.role})
        return user

    return dependency
