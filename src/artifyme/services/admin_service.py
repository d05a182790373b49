"""Admin service — back-office reporting and account support actions."""

import uuid
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.db.models import Order, Subscription, Transformation, User, as_utc, utcnow
from artifyme.errors import NotFoundError
from artifyme.services.keycloak_service import KeycloakClient

logger = structlog.get_logger()


def _page(q, page: int, limit: int):
    return q.offset((page - 1) * limit).limit(limit)


class AdminService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _count(self, model, *where) -> int:
        q = select(func.count()).select_from(model)
        if where:
            q = q.where(*where)
        return await self.db.scalar(q) or 0

    async def dashboard(self) -> dict:
        """Headline numbers for the admin home page.

        Learn: "this month" starts at 00:00 UTC on the 1st; "active" users
        are those who started a transformation in the last 30 days.
        """
        now = utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        thirty_days_ago = now - timedelta(days=30)

        active_users = await self.db.scalar(
            select(func.count(func.distinct(Transformation.user_id))).where(
                Transformation.created_at >= thirty_days_ago
            )
        )
        revenue_total = await self.db.scalar(
            select(func.coalesce(func.sum(Order.amount), 0)).where(Order.status == "completed")
        )
        revenue_month = await self.db.scalar(
            select(func.coalesce(func.sum(Order.amount), 0)).where(
                Order.status == "completed", Order.created_at >= month_start
            )
        )
        popular = await self.db.execute(
            select(Transformation.style, func.count().label("count"))
            .group_by(Transformation.style)
            .order_by(func.count().desc())
            .limit(5)
        )
        plans = await self.db.execute(
            select(Subscription.plan, func.count().label("count"))
            .where(Subscription.status == "active")
            .group_by(Subscription.plan)
        )

        return {
            "users": {
                "total": await self._count(User),
                "new_this_month": await self._count(User, User.created_at >= month_start),
                "active": active_users or 0,
            },
            "transformations": {
                "total": await self._count(Transformation),
                "this_month": await self._count(
                    Transformation, Transformation.created_at >= month_start
                ),
            },
            "revenue": {"total": revenue_total or 0, "this_month": revenue_month or 0},
            "popular_styles": [{"style": r.style, "count": r.count} for r in popular],
            "subscriptions": [{"plan": r.plan, "count": r.count} for r in plans],
        }

    async def list_users(
        self, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> tuple[list[dict], int]:
        where = []
        if search:
            pattern = f"%{search.lower()}%"
            where.append(
                or_(func.lower(User.email).like(pattern), func.lower(User.name).like(pattern))
            )

        total = await self._count(User, *where)

        transformations = (
            select(func.count())
            .where(Transformation.user_id == User.id)
            .correlate(User)
            .scalar_subquery()
        )
        q = (
            select(User, Subscription, transformations.label("transformations"))
            .outerjoin(Subscription, Subscription.user_id == User.id)
            .where(*where)
            .order_by(User.created_at.desc())
        )
        rows = await self.db.execute(_page(q, page, limit))

        users = [
            {
                "id": u.id,
                "keycloak_id": u.keycloak_id,
                "email": u.email,
                "name": u.name,
                "credits": u.credits,
                "subscription": {"plan": s.plan, "status": s.status} if s else None,
                "transformations": n,
                "deleted_at": as_utc(u.deleted_at),
                "created_at": as_utc(u.created_at),
            }
            for u, s, n in rows.all()
        ]
        return users, total

    async def list_orders(
        self, page: int = 1, limit: int = 20, status: Optional[str] = None
    ) -> tuple[list[dict], int]:
        where = [Order.status == status] if status else []
        total = await self._count(Order, *where)
        q = (
            select(Order, User.email, User.name)
            .join(User, User.id == Order.user_id)
            .where(*where)
            .order_by(Order.created_at.desc())
        )
        rows = await self.db.execute(_page(q, page, limit))
        orders = [
            {
                "id": o.id,
                "type": o.type,
                "status": o.status,
                "amount": o.amount,
                "currency": o.currency,
                "payment_provider": o.payment_provider,
                "payment_id": o.payment_id,
                "metadata": o.meta,
                "created_at": as_utc(o.created_at),
                "user": {"email": email, "name": name},
            }
            for o, email, name in rows.all()
        ]
        return orders, total

    async def list_transformations(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        style: Optional[str] = None,
    ) -> tuple[list[dict], int]:
        where = []
        if status:
            where.append(Transformation.status == status)
        if style:
            where.append(Transformation.style == style)
        total = await self._count(Transformation, *where)
        q = (
            select(Transformation, User.email, User.name)
            .join(User, User.id == Transformation.user_id)
            .where(*where)
            .order_by(Transformation.created_at.desc())
        )
        rows = await self.db.execute(_page(q, page, limit))
        items = [
            {
                "id": t.id,
                "style": t.style,
                "status": t.status,
                "output_image_url": t.output_image_url,
                "error_message": t.error_message,
                "created_at": as_utc(t.created_at),
                "completed_at": as_utc(t.completed_at),
                "user": {"email": email, "name": name},
            }
            for t, email, name in rows.all()
        ]
        return items, total

    async def add_credits(
        self, admin_id: str, user_id: uuid.UUID, amount: int, reason: Optional[str] = None
    ) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        user.credits += amount
        await self.db.commit()
        logger.info(
            "admin.credits_added",
            admin_id=admin_id,
            user_id=str(user_id),
            amount=amount,
            reason=reason,
            new_balance=user.credits,
        )
        return user

    async def reactivate_user(
        self, admin_id: str, keycloak_id: str, keycloak: KeycloakClient
    ) -> User:
        """Clear the soft delete and re-enable the Keycloak account."""
        result = await self.db.execute(select(User).where(User.keycloak_id == keycloak_id))
        user = result.scalars().first()
        if user is None:
            raise NotFoundError("User")

        user.deleted_at = None
        await self.db.commit()
        await keycloak.enable_user(keycloak_id)
        logger.info("admin.user_reactivated", admin_id=admin_id, keycloak_id=keycloak_id)
        return user
