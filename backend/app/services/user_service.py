"""
Keystone Backend — User Service
===============================

What:  Local user accounts mirrored from the identity provider.
Who:   Auth dependencies (find-or-create on each authenticated request), the
       identity webhook, and the payments webhook (subscription changes).
How:   Session-bound like the other services; writes flush, the request (or
       webhook) session commits.

Active vs deleted:
    Every `find_*` ignores soft-deleted accounts unless `include_deleted=True`;
    `get_by_id` returns deleted accounts so callers can report them as disabled.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.enums import SubscriptionStatus, UserRole
from app.models.user import User
from app.schemas.user import IdentityProfile, UserStats

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _one(self, *criteria, include_deleted: bool = False) -> Optional[User]:
        stmt = select(User).where(*criteria)
        if not include_deleted:
            stmt = stmt.where(User.deleted_at.is_(None))
        return (await self.session.execute(stmt.limit(1))).scalar_one_or_none()

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def find_by_external_id(self, external_id: str, include_deleted: bool = False) -> Optional[User]:
        return await self._one(User.external_id == external_id, include_deleted=include_deleted)

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self._one(User.email == email.lower())

    async def find_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        return await self._one(User.stripe_customer_id == customer_id)

    async def create(self, profile: IdentityProfile, role: UserRole = UserRole.USER) -> User:
        user = User(
            external_id=profile.external_id,
            email=profile.email,
            name=profile.name,
            role=role.value,
            email_verified=bool(profile.email_verified),
            profile_image=profile.profile_image,
            metadata_={},
        )
        self.session.add(user)
        await self.session.flush()
        logger.info("User created: %s (%s)", user.id, user.email)
        return user

    async def find_or_create_from_identity(
        self,
        profile: IdentityProfile,
        role: UserRole = UserRole.USER,
    ) -> Tuple[User, bool]:
        """
        Returns (user, created). Existing accounts pick up changed profile
        fields; a soft-deleted account is returned as-is so the caller can
        refuse it.
        """
        user = await self.find_by_external_id(profile.external_id, include_deleted=True)
        if user is None:
            return await self.create(profile, role=role), True
        if user.is_deleted:
            return user, False

        user.email = profile.email
        if profile.name:
            user.name = profile.name
        if profile.email_verified is not None:
            user.email_verified = profile.email_verified
        if profile.profile_image:
            user.profile_image = profile.profile_image
        await self.session.flush()
        return user, False

    async def update_last_login(self, user: User) -> User:
        user.touch_login()
        await self.session.flush()
        return user

    async def update_subscription(
        self,
        user: User,
        subscription: SubscriptionStatus,
        stripe_customer_id: Optional[str] = None,
    ) -> User:
        user.subscription = SubscriptionStatus(subscription).value
        if stripe_customer_id:
            user.stripe_customer_id = stripe_customer_id
        await self.session.flush()
        logger.info("User %s subscription → %s", user.id, user.subscription)
        return user

    async def update_profile(self, user: User, **fields: Any) -> User:
        allowed = {"email", "name", "email_verified", "profile_image", "metadata"}
        for key, value in fields.items():
            if key not in allowed:
                raise ValueError(f"Unknown profile field: {key}")
            if key == "email" and value:
                value = value.lower()
            setattr(user, "metadata_" if key == "metadata" else key, value)
        await self.session.flush()
        return user

    async def soft_delete(self, user: User) -> bool:
        if user.is_deleted:
            return False
        user.deleted_at = utcnow()
        await self.session.flush()
        logger.info("User soft-deleted: %s", user.id)
        return True

    async def restore(self, user: User) -> bool:
        if not user.is_deleted:
            return False
        user.deleted_at = None
        await self.session.flush()
        return True

    async def get_stats(self) -> UserStats:
        active = User.deleted_at.is_(None)

        async def count(*criteria) -> int:
            stmt = select(func.count()).select_from(User).where(*criteria)
            return (await self.session.execute(stmt)).scalar_one()

        def grouped(column) -> Any:
            return select(column, func.count()).where(active).group_by(column)

        by_role: Dict[str, int] = dict((await self.session.execute(grouped(User.role))).all())
        by_subscription: Dict[str, int] = dict((await self.session.execute(grouped(User.subscription))).all())

        return UserStats(
            total=await count(active),
            active=await count(active, User.email_verified.is_(True)),
            active_last_30_days=await count(active, User.last_login_at >= utcnow() - timedelta(days=30)),
            deleted=await count(User.deleted_at.is_not(None)),
            by_role=by_role,
            by_subscription=by_subscription,
        )
