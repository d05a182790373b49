"""User service — local user rows behind Keycloak identities.

Learn: Keycloak owns credentials; the local users table owns everything
the product needs (credits, preferences, subscription). The row is
created on the first authenticated call with the signup bonus, so every
service can call get_or_create() instead of handling "user not found".
"""

from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.auth.dependencies import CurrentUser
from artifyme.config import settings
from artifyme.db.models import Subscription, Transformation, User, utcnow
from artifyme.errors import AuthorizationError, ValidationError

logger = structlog.get_logger()


class UserService:
    """Business logic for the current user's account."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_keycloak_id(self, keycloak_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.keycloak_id == keycloak_id)
        )
        return result.scalars().first()

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.email == email.strip().lower())
        )
        return result.scalars().first()

    async def get_or_create(self, identity: CurrentUser) -> User:
        """Return the caller's row, creating it (with the signup bonus) on first use."""
        user = await self.get_by_keycloak_id(identity.id)
        if user:
            if user.deleted_at is not None:
                raise AuthorizationError("Account deactivated")
            return user

        if not identity.email:
            raise ValidationError(
                "Token does not contain an email. Check the Keycloak client scopes and mappers.",
                code="MISSING_EMAIL",
            )

        user = User(
            keycloak_id=identity.id,
            email=identity.email.strip().lower(),
            name=identity.name or None,
            credits=settings.signup_bonus_credits,
            preferences={},
        )
        self.db.add(user)
        await self.db.commit()
        logger.info("user.created", user_id=str(user.id), keycloak_id=identity.id)
        return user

    async def get_subscription(self, user: User) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.user_id == user.id)
        )
        return result.scalars().first()

    async def update_profile(
        self,
        user: User,
        name: Optional[str] = None,
        preferences: Optional[dict] = None,
    ) -> User:
        """Apply a partial update. Preferences are merged key by key."""
        if name is not None:
            user.name = name
        if preferences:
            # New dict so the JSON column registers the change.
            user.preferences = {**(user.preferences or {}), **preferences}
        await self.db.commit()
        return user

    async def stats(self, user: User) -> dict:
        total = await self.db.scalar(
            select(func.count()).select_from(Transformation).where(
                Transformation.user_id == user.id
            )
        )
        completed = await self.db.scalar(
            select(func.count()).select_from(Transformation).where(
                Transformation.user_id == user.id,
                Transformation.status == "completed",
            )
        )
        favorite = await self.db.execute(
            select(Transformation.style, func.count().label("n"))
            .where(Transformation.user_id == user.id)
            .group_by(Transformation.style)
            .order_by(func.count().desc())
            .limit(1)
        )
        top = favorite.first()
        return {
            "total_transformations": total or 0,
            "completed_transformations": completed or 0,
            "success_rate": round(completed / total * 100) if total else 0,
            "favorite_style": top.style if top else None,
            "credits": user.credits,
        }

    async def soft_delete(self, keycloak_id: str) -> bool:
        """Stamp deleted_at. Idempotent; returns True if a row changed."""
        user = await self.get_by_keycloak_id(keycloak_id)
        if user is None or user.deleted_at is not None:
            return False
        user.deleted_at = utcnow()
        await self.db.commit()
        logger.info("user.soft_deleted", user_id=str(user.id))
        return True
